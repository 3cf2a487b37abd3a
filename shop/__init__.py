import json
import logging
import os

import click
from flask import Flask, jsonify

from shop.config import config_by_name
from shop.errors import OrderError
from shop.extensions import db, limiter, migrate


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
        from shop import models  # noqa: F401

    # --- Stripe gateway (one per app, swappable in tests) ---
    from shop.services.stripe_gateway import init_gateway
    init_gateway(app)

    # --- Register blueprints ---
    from shop.blueprints.checkout import checkout_bp
    from shop.blueprints.orders import orders_bp
    from shop.blueprints.stock import stock_bp
    from shop.blueprints.webhooks import webhooks_bp

    app.register_blueprint(webhooks_bp)
    app.register_blueprint(checkout_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(stock_bp)

    @app.route("/health")
    def health():
        return jsonify(ok=True)

    # --- Error handlers ---
    @app.errorhandler(OrderError)
    def order_error(e):
        db.session.rollback()
        if e.is_client_error:
            app.logger.info(f"{e.kind} error: [{e.code}] {e.message}")
        else:
            app.logger.error(f"{e.kind} error: [{e.code}] {e.message}")
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(404)
    def not_found(e):
        return jsonify(ok=False, code="NOT_FOUND", message="Resource not found"), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify(ok=False, code="METHOD_NOT_ALLOWED", message="Method not allowed"), 405

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify(ok=False, code="RATE_LIMITED", message="Too many requests"), 429

    @app.errorhandler(500)
    def server_error(e):
        db.session.rollback()
        return jsonify(ok=False, code="INTERNAL_ERROR", message="Internal server error"), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # JSON API: never framed, never rendered as a document
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
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


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-stock")
    @click.argument("catalog_file", type=click.Path(exists=True, dir_okay=False))
    @click.option("--replace", is_flag=True, help="Overwrite stock of existing products.")
    def seed_stock(catalog_file, replace):
        """Load products from a JSON file into the stock ledger.

        The file holds a list of {id, name, stockValue, priceCents, isSample?}.

        Usage:
            flask seed-stock catalog.json
            flask seed-stock catalog.json --replace
        """
        from shop.models.stock import StockRecord

        with open(catalog_file, encoding="utf-8") as fh:
            entries = json.load(fh)
        if not isinstance(entries, list):
            raise click.ClickException("Catalog file must contain a JSON list")

        created = updated = skipped = 0
        for entry in entries:
            try:
                product_id = int(entry["id"])
                stock_value = int(entry.get("stockValue", 0))
                price_cents = int(entry["priceCents"])
                name = str(entry["name"]).strip()
            except (KeyError, TypeError, ValueError) as e:
                raise click.ClickException(f"Invalid catalog entry {entry!r}: {e}")
            if stock_value < 0 or price_cents <= 0 or not name:
                raise click.ClickException(f"Invalid catalog entry {entry!r}")

            record = db.session.get(StockRecord, product_id)
            if record is None:
                db.session.add(StockRecord(
                    id=product_id,
                    name=name,
                    stock_value=stock_value,
                    price_cents=price_cents,
                    is_sample=bool(entry.get("isSample", False)),
                ))
                created += 1
            elif replace:
                record.name = name
                record.stock_value = stock_value
                record.price_cents = price_cents
                record.is_sample = bool(entry.get("isSample", record.is_sample))
                updated += 1
            else:
                skipped += 1

        db.session.commit()
        click.echo(f"Stock seeded: {created} created, {updated} updated, {skipped} skipped")

    @app.cli.command("move-orders")
    @click.argument("order_ids", nargs=-1, required=True)
    @click.option("--from", "from_folder", default="orders", show_default=True)
    @click.option("--to", "to_folder", required=True,
                  type=click.Choice(["orders", "archive", "deleted"]))
    def move_orders_command(order_ids, from_folder, to_folder):
        """Move orders between folders (orders / archive / deleted).

        Usage:
            flask move-orders <id> <id> --to archive
        """
        from shop.services.order_service import move_orders

        try:
            result = move_orders(list(order_ids), from_folder, to_folder, actor="cli")
        except OrderError as e:
            raise click.ClickException(e.message)
        click.echo(f"Moved:   {', '.join(result['moved']) or '-'}")
        click.echo(f"Skipped: {', '.join(result['skipped']) or '-'}")

    @app.cli.command("reconcile-session")
    @click.argument("session_id")
    def reconcile_session_command(session_id):
        """Re-run webhook reconciliation for one Checkout Session.

        Creates the order if missing and adjusts stock if not yet adjusted.
        Safe to repeat.

        Usage:
            flask reconcile-session cs_test_123
        """
        from shop.services.webhook_service import reconcile_session_by_id

        try:
            result = reconcile_session_by_id(session_id)
        except OrderError as e:
            raise click.ClickException(f"[{e.code}] {e.message}")
        click.echo(f"Session {session_id}: {result['outcome']} (order {result['order_id']})")
        failed = (result.get("stock") or {}).get("failed") or []
        for line in failed:
            click.echo(f"  stock not decremented for product {line['id']}: {line['reason']}")
