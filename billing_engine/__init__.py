import os
import logging

import click
import stripe
from flask import Flask, jsonify

from billing_engine.config import config_by_name
from billing_engine.errors import BillingError
from billing_engine.extensions import db, migrate, limiter


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from billing_engine import models  # noqa: F401

    # --- Webhook guard (replay + rate-limit stores live per app) ---
    init_webhook_guard(app)

    # --- Register blueprints ---
    from billing_engine.blueprints.webhooks import webhooks_bp
    from billing_engine.blueprints.billing import billing_bp
    from billing_engine.blueprints.access import access_bp

    app.register_blueprint(webhooks_bp)
    app.register_blueprint(billing_bp)
    app.register_blueprint(access_bp)

    # --- Error handlers ---
    @app.errorhandler(BillingError)
    def billing_error(e):
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(stripe.StripeError)
    def stripe_error(e):
        app.logger.error(f"Stripe API error: {e}")
        return jsonify({"error": "Payment provider request failed", "code": "provider_error"}), 502

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found", "code": "not_found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed", "code": "method_not_allowed"}), 405

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Internal server error", "code": "internal_error"}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Control referrer information
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON API: nothing is ever rendered or framed
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def init_webhook_guard(app):
    """Build this app's WebhookGuard from config and keep it in app.extensions."""
    from billing_engine.services.webhook_security import WebhookGuard, WebhookSecurityConfig

    if not app.config.get("STRIPE_WEBHOOK_SECRET"):
        app.logger.warning("STRIPE_WEBHOOK_SECRET is not set; webhooks will be refused")
        app.extensions["webhook_guard"] = None
        return None

    guard = WebhookGuard(WebhookSecurityConfig.from_app_config(app.config))
    app.extensions["webhook_guard"] = guard
    return guard


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-prices")
    @click.option("--currency", default="usd", help="Currency for the demo prices")
    def seed_prices(currency):
        """Create the demo Basic / Pro / Pro Annual prices locally.

        Usage:
            flask seed-prices
            flask seed-prices --currency eur
        """
        from billing_engine.models.price import Price

        demo = [
            ("basic", "Basic", 999, "month"),
            ("pro", "Pro", 2999, "month"),
            ("pro", "Pro Annual", 29990, "year"),
        ]

        click.echo("")
        click.echo("=" * 60)
        for plan_id, plan_name, unit_amount, interval in demo:
            existing = Price.query.filter_by(
                plan_id=plan_id, billing_interval=interval, currency=currency
            ).first()
            if existing:
                click.echo(f"  Exists:  {plan_name} ({existing.id})")
                continue
            price = Price(
                plan_id=plan_id,
                plan_name=plan_name,
                unit_amount=unit_amount,
                currency=currency,
                billing_interval=interval,
            )
            db.session.add(price)
            db.session.flush()
            click.echo(
                f"  Created: {plan_name} ({price.id}) "
                f"{unit_amount / 100:.2f} {currency.upper()}/{interval}"
            )
        db.session.commit()
        click.echo("=" * 60)

    @app.cli.command("process-subscriptions")
    @click.option("--dry-run", is_flag=True, help="Show what would change without committing.")
    def process_subscriptions_command(dry_run):
        """End elapsed trials, renew lapsed periods, run dunning, reset usage limits.

        Usage:
            flask process-subscriptions
            flask process-subscriptions --dry-run
        """
        from billing_engine.services.maintenance_service import process_subscriptions

        summary = process_subscriptions(dry_run=dry_run)
        prefix = "[dry-run] " if dry_run else ""
        for key, count in summary.items():
            click.echo(f"  {prefix}{key}: {count}")

    @app.cli.command("verify-stripe-prices")
    def verify_stripe_prices():
        """Verify every local price linked to Stripe exists there (same mode as key).

        Run with prod env vars to confirm Live prices; run with test vars for Test mode.
        """
        from billing_engine.models.price import Price

        api_key = app.config.get("STRIPE_SECRET_KEY")
        if not api_key:
            click.echo("ERROR: STRIPE_SECRET_KEY is not set.")
            return
        key_mode = "Live" if api_key.startswith("sk_live_") else "Test"
        click.echo(f"Stripe key mode: {key_mode}")
        click.echo("")

        stripe.api_key = api_key

        prices = Price.query.filter(Price.provider_price_id.isnot(None)).all()
        if not prices:
            click.echo("No local prices are linked to Stripe.")
            return

        for price in prices:
            click.echo(f"  {price.plan_name}: {price.provider_price_id}")
            try:
                remote = stripe.Price.retrieve(price.provider_price_id)
            except stripe.InvalidRequestError as e:
                click.echo(f"    ERROR: {e}")
                continue
            livemode = remote.get("livemode")
            click.echo(
                f"    exists=True, livemode={livemode}, active={remote.get('active')}, "
                f"amount_matches={remote.get('unit_amount') == price.unit_amount}"
            )
            if livemode is True and key_mode != "Live":
                click.echo("    WARNING: This price is Live but your key is Test.")
            elif livemode is False and key_mode == "Live":
                click.echo("    WARNING: This price is Test but your key is Live.")
