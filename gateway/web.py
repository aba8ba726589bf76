# device_bridge/gateway/web.py
import logging

from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_socketio import SocketIO, emit

import config.settings as settings
from broker.events import log_event
from broker.server import BrokerServer
from common.errors import ConflictError, DeliveryFailure, ValidationError

from .context import AppContext


def _json_body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _first(body: dict, *keys):
    """Value of the first key present; camelCase names first, legacy snake_case after."""
    for key in keys:
        if body.get(key) is not None:
            return body[key]
    return None


def create_app(context: AppContext) -> Flask:
    app = Flask(__name__)
    app.extensions["bridge"] = context
    # the REST API is called from browser pages served elsewhere
    CORS(app)

    # ─── Live lifecycle feed ─────────────────────────────────────
    socketio = SocketIO(app, async_mode="threading")

    @socketio.on("connect", namespace="/events")
    def on_events_connect():
        emit("history", [e.to_dict() for e in list(context.events.history)])

    def forward_event(event):
        socketio.emit("broker_event", event.to_dict(), namespace="/events")

    app.extensions["bridge_listener"] = context.events.add_listener(forward_event)

    # ─── Error mapping ───────────────────────────────────────────
    @app.errorhandler(ValidationError)
    def on_validation_error(exc):
        return jsonify(ok=False, error=str(exc)), 400

    @app.errorhandler(ConflictError)
    def on_conflict(exc):
        return jsonify(ok=False, error=str(exc), existing=exc.existing.to_dict()), 409

    # ─── Probes ──────────────────────────────────────────────────
    @app.route("/health")
    def health():
        return jsonify(ok=True,
                       transportPath=context.transport_path,
                       transportPort=context.transport_port,
                       topics={"status": context.status_topic,
                               "command": context.command_topic})

    @app.route(context.transport_path)
    def upgrade_required():
        # the upgrade itself is served by the broker's WebSocket listener
        return ("WebSocket MQTT endpoint. Use ws(s) and MQTT over websockets.",
                426, {"Upgrade": "websocket"})

    # ─── Devices ─────────────────────────────────────────────────
    @app.route("/devices", methods=("GET",))
    def list_devices():
        return jsonify(items=[d.to_dict() for d in context.registry.list()])

    @app.route("/devices", methods=("POST",))
    def register_device():
        body = _json_body()
        device = context.registry.register(
            body.get("username"),
            _first(body, "employeeId", "empId", "emp_id"),
        )
        return jsonify(ok=True, item=device.to_dict(), redirect="/menu"), 201

    # ─── Orders & commands ───────────────────────────────────────
    @app.route("/orders", methods=("POST",))
    def submit_order():
        body = _json_body()
        name = body.get("name")
        employee_id = _first(body, "employeeId", "emp_id")
        order_list = _first(body, "orderList", "order_list")
        if not name or not employee_id or not isinstance(order_list, list):
            raise ValidationError(
                "Invalid payload. Required: { name, employeeId, orderList[] }"
            )

        try:
            context.publish(context.status_topic, {
                "name":       name,
                "employeeId": employee_id,
                "orderList":  order_list,
            })
        except DeliveryFailure as exc:
            logging.error(f"order publish failed: {exc}")
            return jsonify(ok=False, error="MQTT publish failed"), 500
        return jsonify(ok=True)

    @app.route("/command", methods=("POST",))
    def submit_command():
        try:
            context.publish(context.command_topic, _json_body())
        except DeliveryFailure as exc:
            logging.error(f"command publish failed: {exc}")
            return jsonify(ok=False, error="Command publish failed"), 500
        return jsonify(ok=True)

    return app


def close_app(app: Flask) -> None:
    """Detach the app's live feed from the event bus it was created with."""
    listener = app.extensions.pop("bridge_listener", None)
    if listener is not None:
        app.extensions["bridge"].events.remove_listener(listener)


def main():
    logging.basicConfig(level=settings.LOG_LEVEL,
                        format="%(asctime)s %(levelname)s %(message)s")

    broker = BrokerServer()
    broker.events.add_listener(log_event)
    broker.start_in_thread()

    app = create_app(AppContext.for_broker(broker))
    socketio = app.extensions["socketio"]

    logging.info(f"HTTP gateway listening on PORT={settings.PORT}")
    logging.info(f"WS MQTT path: {broker.bridge.path} "
                 f"(connect ws://<host>:{broker.bridge.port}{broker.bridge.path})")
    try:
        socketio.run(app, host=settings.HOST, port=settings.PORT,
                     allow_unsafe_werkzeug=True)
    finally:
        close_app(app)
        broker.stop_thread()


if __name__ == "__main__":
    main()
