"""Orders blueprint — /api/orders/*

Back-office order routes. Every route requires the admin bearer token.

Route Map:
  GET   /api/orders                        — list (folder, status, q, limit)
  GET   /api/orders/<id>                   — one order (id, event_id, session_id, order_id)
  PATCH /api/orders/<id>                   — merge changes into existing fields
  PUT   /api/orders/<id>/status/<stage>    — set one shipment stage {value: bool}
  POST  /api/orders/move                   — {ids, from, to} between folders
"""

import logging

from flask import Blueprint, jsonify, request

from shop.decorators import admin_token_required
from shop.services.order_service import (
    get_order_by_id,
    get_orders,
    move_orders,
    set_status_stage,
    update_order,
)

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")

logger = logging.getLogger(__name__)


def _json_body():
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


@orders_bp.route("", methods=["GET"])
@admin_token_required
def list_orders():
    orders = get_orders(
        folder=request.args.get("folder", "orders"),
        status=request.args.get("status"),
        q=request.args.get("q"),
        limit=request.args.get("limit"),
    )
    return jsonify(ok=True, count=len(orders), orders=[o.to_dict() for o in orders])


@orders_bp.route("/<order_id>", methods=["GET"])
@admin_token_required
def get_order(order_id):
    return jsonify(ok=True, order=get_order_by_id(order_id).to_dict())


@orders_bp.route("/<order_id>", methods=["PATCH"])
@admin_token_required
def patch_order(order_id):
    order = update_order(order_id, _json_body())
    return jsonify(ok=True, order=order.to_dict())


@orders_bp.route("/<order_id>/status/<stage>", methods=["PUT"])
@admin_token_required
def put_status_stage(order_id, stage):
    order = set_status_stage(order_id, stage, _json_body().get("value"))
    return jsonify(ok=True, order=order.to_dict())


@orders_bp.route("/move", methods=["POST"])
@admin_token_required
def move():
    body = _json_body()
    result = move_orders(
        body.get("ids"),
        body.get("from", "orders"),
        body.get("to"),
    )
    return jsonify(ok=True, **result)
