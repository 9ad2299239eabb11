import logging
import asyncio
import threading
import webbrowser
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime

from flask import Flask, jsonify, render_template_string, request
from flask_socketio import SocketIO

from .config import CONFIG_LOCK, EDITABLE_PREFERENCES, WEB_HOST, WEB_PORT, save_preferences

CORE_CALL_TIMEOUT = 180

INDEX_HTML = """<!doctype html>
<html>
<head><meta charset="utf-8"><title>Twitch Drop Orchestrator</title></head>
<body>
<h1>Twitch Drop Orchestrator</h1>
<pre id="status">loading…</pre>
<button onclick="post('/api/start')">Start watching</button>
<button onclick="post('/api/stop')">Stop watching</button>
<ul id="log"></ul>
<script src="https://cdn.socket.io/4.7.5/socket.io.min.js"></script>
<script>
async function refresh() {
  const r = await fetch('/api/status');
  document.getElementById('status').textContent = JSON.stringify(await r.json(), null, 2);
}
async function post(url) { await fetch(url, {method: 'POST'}); refresh(); }
const socket = io();
socket.onAny((name, payload) => {
  const li = document.createElement('li');
  li.textContent = name + ' ' + JSON.stringify(payload);
  document.getElementById('log').prepend(li);
  refresh();
});
refresh();
</script>
</body>
</html>
"""


def run_on_core(loop, coro, timeout: float = CORE_CALL_TIMEOUT):
	"""Run ``coro`` on the orchestrator's event loop from a server thread and wait for it."""
	future = asyncio.run_coroutine_threadsafe(coro, loop)
	try:
		return future.result(timeout=timeout)
	except FutureTimeoutError:
		future.cancel()
		raise TimeoutError(f"Core operation did not finish within {timeout}s")


def create_web_app(orchestrator, loop, prefs: dict | None = None, config_path: str | None = None, call_timeout: float = CORE_CALL_TIMEOUT):
	"""Create the Flask app and its Socket.IO server bound to ``orchestrator``.

	Every orchestrator event is re-emitted to Socket.IO clients under the
	same name.
	"""
	prefs = prefs if prefs is not None else orchestrator.prefs
	app = Flask(__name__)
	app.config['SECRET_KEY'] = 'twitch_drops_secret_key'
	socketio = SocketIO(app, cors_allowed_origins="*", async_mode="threading")

	def forward(name, payload):
		try:
			socketio.emit(name, payload)
		except Exception as e:
			logging.debug(f"Failed to emit {name} via WebSocket: {e}")

	orchestrator.emitter.on_any(forward)

	def core(coro):
		return run_on_core(loop, coro, timeout=call_timeout)

	def core_error(e):
		logging.error(f"Web request failed: {e}")
		return jsonify({'success': False, 'error': str(e)}), 503

	@app.route('/')
	def index():
		return render_template_string(INDEX_HTML)

	@app.route('/api/status')
	def api_status():
		"""Current watching state, sessions and task health."""
		status = orchestrator.status()
		status.update({
			'status': 'running',
			'total_drops_claimed': orchestrator.get_total_drops_claimed(),
			'timestamp': datetime.now().isoformat(),
		})
		return jsonify(status)

	@app.route('/api/settings', methods=['GET', 'POST'])
	def api_settings():
		"""API endpoint to get and update settings"""
		if request.method == 'GET':
			with CONFIG_LOCK:
				return jsonify({k: prefs.get(k) for k in EDITABLE_PREFERENCES})
		data = request.get_json(silent=True) or {}
		try:
			changed = core(orchestrator.update_config(data))
		except (TypeError, ValueError) as e:
			return jsonify({'success': False, 'message': f'Invalid setting: {e}'}), 400
		except TimeoutError as e:
			return core_error(e)
		if changed and config_path:
			with CONFIG_LOCK:
				save_preferences(prefs, config_path)
		return jsonify({'success': True, 'changed': changed, 'message': 'Settings updated successfully'})

	@app.route('/api/sessions')
	def api_sessions():
		return jsonify([s.to_dict() for s in orchestrator.get_active_sessions()])

	@app.route('/api/start', methods=['POST'])
	def api_start():
		data = request.get_json(silent=True) or {}
		try:
			result = core(orchestrator.start_watching(data.get('campaign_id') or None))
		except TimeoutError as e:
			return core_error(e)
		return jsonify(result.to_dict())

	@app.route('/api/stop', methods=['POST'])
	def api_stop():
		try:
			result = core(orchestrator.stop_watching())
		except TimeoutError as e:
			return core_error(e)
		return jsonify(result.to_dict())

	@app.route('/api/switch', methods=['POST'])
	def api_switch():
		data = request.get_json(silent=True) or {}
		streamer = (data.get('streamer') or '').strip()
		if not streamer:
			return jsonify({'success': False, 'error': 'streamer is required'}), 400
		try:
			result = core(orchestrator.switch_to(streamer))
		except TimeoutError as e:
			return core_error(e)
		return jsonify(result.to_dict())

	@app.route('/api/history')
	def api_history():
		limit = request.args.get('limit', default=100, type=int)
		game = request.args.get('game')
		if game:
			records = orchestrator.get_drop_history_by_game(game)
		else:
			records = orchestrator.get_drop_history(limit)
		return jsonify({
			'records': [r.to_dict() for r in records],
			'total': orchestrator.get_total_drops_claimed(),
		})

	@app.route('/api/campaigns')
	def api_campaigns():
		try:
			campaigns = core(orchestrator.load_campaigns())
		except TimeoutError as e:
			return core_error(e)
		return jsonify([c.to_dict() for c in campaigns])

	@app.route('/api/sync-history', methods=['POST'])
	def api_sync_history():
		try:
			summary = core(orchestrator.sync_all_time_drops())
		except TimeoutError as e:
			return core_error(e)
		return jsonify({'success': True, **summary})

	@socketio.on('connect')
	def handle_connect():
		logging.debug("Web client connected")

	return app, socketio


def start_web_server(app, socketio, host: str = WEB_HOST, port: int = WEB_PORT) -> threading.Thread:
	"""Start the web server in a separate thread"""

	def run_server():
		try:
			logging.info(f"Starting web server on http://{host}:{port}")
			socketio.run(app, host=host, port=port, debug=False, use_reloader=False, allow_unsafe_werkzeug=True)
		except Exception as e:
			logging.error(f"Web server error: {e}")

	thread = threading.Thread(target=run_server, daemon=True, name="web-server")
	thread.start()
	return thread


def open_web_interface(host: str = WEB_HOST, port: int = WEB_PORT):
	"""Open the web interface in the default browser"""
	try:
		webbrowser.open(f'http://{host}:{port}')
		logging.info(f"Opened web interface: http://{host}:{port}")
	except Exception as e:
		logging.error(f"Failed to open web interface: {e}")
