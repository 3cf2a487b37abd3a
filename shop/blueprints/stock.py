"""Stock blueprint — /api/products, /api/stock

Catalog reads are public (the storefront renders from them); stock writes
require the admin bearer token.

Route Map:
  GET  /api/products              — catalog with fewTag / soldOut (?samples=false)
  GET  /api/products/<id>         — one catalog entry
  GET  /api/stock                 — raw stock rows (admin)
  PUT  /api/stock/<id>            — absolute set {stockValue, name?, priceCents?} (admin)
  POST /api/stock/<id>/adjust     — signed change {delta} (admin)
"""

from flask import Blueprint, jsonify, request

from shop.decorators import admin_token_required
from shop.extensions import db
from shop.services.common import to_boolean
from shop.services.stock_service import (
    adjust_stock,
    get_all_products,
    get_all_stock,
    get_product_by_id,
    set_stock,
)

stock_bp = Blueprint("stock", __name__, url_prefix="/api")


def _json_body():
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


@stock_bp.route("/products", methods=["GET"])
def list_products():
    include_samples = to_boolean(request.args.get("samples", "true"))
    return jsonify(ok=True, products=get_all_products(include_samples=include_samples))


@stock_bp.route("/products/<product_id>", methods=["GET"])
def get_product(product_id):
    return jsonify(ok=True, product=get_product_by_id(product_id))


@stock_bp.route("/stock", methods=["GET"])
@admin_token_required
def list_stock():
    return jsonify(ok=True, stock=[r.to_dict() for r in get_all_stock()])


@stock_bp.route("/stock/<product_id>", methods=["PUT"])
@admin_token_required
def put_stock(product_id):
    record = set_stock(product_id, _json_body())
    db.session.commit()
    return jsonify(ok=True, stock=record.to_dict())


@stock_bp.route("/stock/<product_id>/adjust", methods=["POST"])
@admin_token_required
def post_adjust(product_id):
    record = adjust_stock(product_id, _json_body().get("delta"))
    db.session.commit()
    return jsonify(ok=True, stock=record.to_dict())
