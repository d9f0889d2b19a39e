import json
from pathlib import Path

from flask import Flask, jsonify, redirect, render_template_string, request, url_for

from budgets import AttemptBudget, EnabledFlag, JsonFileStore
from slot_advancer import AdvancerConfig

PANEL_TEMPLATE = """
<!doctype html>
<html>
<head>
  <meta charset="utf-8">
  <meta http-equiv="refresh" content="2">
  <title>Slot Advancer</title>
</head>
<body style="font-family: sans-serif; font-size: 13px">
  <h3>Slot Advancer</h3>
  <p>Status: <b>{{ status.get('state', 'idle') }}</b></p>
  <p>Current reservation: {{ status.get('display_label', 'unknown') }}</p>
  <p>Next action in: {{ next_action }}</p>
  <p>Attempts this minute: {{ status.get('attempts_this_minute', 0) }} /
     Reloads this minute: {{ status.get('reloads_this_minute', 0) }}</p>
  <form method="post" action="{{ url_for('toggle') }}" style="display: inline">
    <button type="submit">Automation: {{ 'ON' if enabled else 'OFF' }}</button>
  </form>
  <form method="post" action="{{ url_for('reset_attempts') }}" style="display: inline">
    <button type="submit" title="Clear this minute's change attempt count">Reset attempts</button>
  </form>
  <pre style="max-height: 45vh; overflow: auto; border: 1px solid #999; padding: 8px">{{ log_text }}</pre>
</body>
</html>
"""


def _read_status(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8") or "{}")
    except (OSError, json.JSONDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


def create_app(cfg: AdvancerConfig) -> Flask:
    app = Flask(__name__)
    store = JsonFileStore(cfg.state_path)
    enabled_flag = EnabledFlag(store)
    attempts = AttemptBudget(store, cfg.max_attempts_per_minute)
    heartbeat_path = Path(cfg.heartbeat_path).expanduser()

    def _wants_json() -> bool:
        return request.accept_mimetypes.best == "application/json" or request.args.get("format") == "json"

    @app.route("/", methods=["GET"])
    def index():
        status = _read_status(heartbeat_path)
        seconds = status.get("seconds_until_next_action")
        next_action = f"{seconds:.1f}s" if isinstance(seconds, (int, float)) else "-"
        return render_template_string(
            PANEL_TEMPLATE,
            status=status,
            enabled=enabled_flag.get(),
            next_action=next_action,
            log_text="\n".join(status.get("log_lines") or []),
        )

    @app.route("/status", methods=["GET"])
    def status():
        payload = _read_status(heartbeat_path)
        payload["enabled"] = enabled_flag.get()
        return jsonify(payload)

    @app.route("/toggle", methods=["POST"])
    def toggle():
        enabled_flag.set(not enabled_flag.get())
        if _wants_json():
            return jsonify({"enabled": enabled_flag.get()})
        return redirect(url_for("index"))

    @app.route("/reset-attempts", methods=["POST"])
    def reset_attempts():
        attempts.reset()
        if _wants_json():
            return jsonify({"reset": True})
        return redirect(url_for("index"))

    return app


if __name__ == "__main__":
    create_app(AdvancerConfig.load()).run(debug=False)
