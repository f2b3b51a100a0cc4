"""
Flask server for the TRIAD observer interface.

Copyright (c) 2025 Mathew Mark Mytka
SPDX-License-Identifier: LicenseRef-ESL-A

Licensed under the Earthian Stewardship License (ESL-A).
See LICENSE file for full terms.

Provides REST API and Server-Sent Events for real-time dialogue
streaming, live metrics, user feedback and prompt population
export/import.
"""

import json
from pathlib import Path
from typing import Dict

from flask import Flask, request, jsonify, Response
from flask_cors import CORS

from .roles import ROLE_ORDER, STRATEGIES, TriadConfig, parse_role
from .completion_client import CompletionClient, resolve_endpoint, CompletionError
from .interactive import InteractiveSession, SessionState, StateEvent, event_to_dict

# Flask app
app = Flask(__name__)
CORS(app)

# Active sessions store; each session owns its own prompt populations
sessions: Dict[str, InteractiveSession] = {}

# Paths
PROJECT_ROOT = Path(__file__).parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"
SESSIONS_DIR = PROJECT_ROOT / "sessions"


def _get_session(session_id: str):
    session = sessions.get(session_id)
    if session is None:
        return None, (jsonify({"error": "Session not found"}), 404)
    return session, None


def _load_config(name: str) -> TriadConfig:
    config_path = CONFIG_DIR / f"{name}.yaml"
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {name}")
    return TriadConfig.from_yaml(config_path)


# ============================================================================
# API: Status
# ============================================================================

@app.route('/api/status')
def get_status():
    """Get system status including backend availability per role."""
    config_name = request.args.get('config', 'default')
    try:
        config = _load_config(config_name)
    except (FileNotFoundError, ValueError):
        config = TriadConfig()

    backends = {}
    for role in ROLE_ORDER:
        role_config = config.roles[role]
        try:
            endpoint = resolve_endpoint(role_config.provider, role_config.endpoint)
        except CompletionError as e:
            backends[role.value] = {"provider": role_config.provider, "error": e.detail}
            continue
        backends[role.value] = {
            "provider": role_config.provider,
            "endpoint": endpoint,
            "running": CompletionClient.is_running(endpoint),
        }

    return jsonify({
        "backends": backends,
        "strategies": list(STRATEGIES),
        "active_sessions": len(sessions)
    })


@app.route('/api/roles')
def get_roles():
    """Get the configured roles with model and baseline prompt."""
    config_name = request.args.get('config', 'default')
    try:
        config = _load_config(config_name)
    except FileNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    return jsonify([
        {
            "role": role.value,
            "label": role.label,
            "provider": config.roles[role].provider,
            "model": config.roles[role].model,
            "temperature": config.roles[role].temperature,
            "prompt_system": config.roles[role].prompt_system,
            "prompt_style": config.roles[role].prompt_style,
        }
        for role in ROLE_ORDER
    ])


# ============================================================================
# API: Sessions
# ============================================================================

@app.route('/api/session/start', methods=['POST'])
def start_session():
    """Create a new dialogue session. Streaming starts it."""
    data = request.get_json() or {}
    config_name = data.get('config', 'default')

    try:
        config = _load_config(config_name)
    except FileNotFoundError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError as e:
        return jsonify({"error": f"Failed to load config: {e}"}), 400

    if 'topic' in data:
        config.topic = data['topic']
    if 'max_turns' in data:
        config.max_turns = int(data['max_turns'])
    if 'seed' in data:
        config.seed = data['seed']
    if 'strategy' in data:
        if data['strategy'] not in STRATEGIES:
            return jsonify({"error": f"Unknown strategy: {data['strategy']}"}), 400
        config.strategy = data['strategy']

    SESSIONS_DIR.mkdir(parents=True, exist_ok=True)
    session = InteractiveSession(config=config, output_dir=SESSIONS_DIR)
    sessions[session.session_id] = session

    return jsonify({
        "session_id": session.session_id,
        "topic": config.topic,
        "strategy": config.strategy,
        "max_turns": config.max_turns
    })


@app.route('/api/session/<session_id>/state')
def get_session_state(session_id: str):
    """Get current state of a session."""
    session, error = _get_session(session_id)
    if error:
        return error
    return jsonify(session.get_state())


@app.route('/api/session/<session_id>/stream')
def stream_session(session_id: str):
    """SSE endpoint for streaming dialogue events.

    - Session runs in background thread, pushes events to queue
    - This endpoint reads from queue and sends SSE events
    - Reconnection-safe: queue persists across SSE connections
    """
    session, error = _get_session(session_id)
    if error:
        return error

    # Start the session if not already started (idempotent)
    session.start()

    def generate():
        """Generator that reads from session's event queue."""
        while True:
            if session.state == SessionState.COMPLETE:
                while session.has_events():
                    event = session.get_next_event(timeout=0.1)
                    if event:
                        yield format_sse_event(event)
                break

            event = session.get_next_event(timeout=5.0)
            if event is None:
                yield ": keepalive\n\n"
                continue

            yield format_sse_event(event)

            if isinstance(event, StateEvent) and event.state == SessionState.COMPLETE:
                break

    return Response(
        generate(),
        mimetype='text/event-stream',
        headers={
            'Cache-Control': 'no-cache',
            'Connection': 'keep-alive',
            'X-Accel-Buffering': 'no'
        }
    )


def format_sse_event(event) -> str:
    """Format a session event as SSE data."""
    data = event_to_dict(event)
    return f"event: {data['type']}\ndata: {json.dumps(data)}\n\n"


@app.route('/api/session/<session_id>/pause', methods=['POST'])
def pause_session(session_id: str):
    session, error = _get_session(session_id)
    if error:
        return error
    session.pause()
    return jsonify({"status": "pausing"})


@app.route('/api/session/<session_id>/resume', methods=['POST'])
def resume_session(session_id: str):
    session, error = _get_session(session_id)
    if error:
        return error
    session.resume()
    return jsonify({"status": "resumed"})


@app.route('/api/session/<session_id>/cancel', methods=['POST'])
def cancel_turn(session_id: str):
    """Abort the in-flight completion; the dialogue continues."""
    session, error = _get_session(session_id)
    if error:
        return error
    session.cancel_turn()
    return jsonify({"status": "cancelled"})


@app.route('/api/session/<session_id>/strategy', methods=['POST'])
def set_strategy(session_id: str):
    session, error = _get_session(session_id)
    if error:
        return error

    name = (request.get_json() or {}).get('strategy')
    if name not in STRATEGIES:
        return jsonify({"error": f"Unknown strategy: {name}"}), 400

    session.set_strategy(name)
    return jsonify({"strategy": name})


@app.route('/api/session/<session_id>/feedback', methods=['POST'])
def submit_feedback(session_id: str):
    """Record a 1-5 user rating against a prompt variant."""
    session, error = _get_session(session_id)
    if error:
        return error

    data = request.get_json() or {}
    variant_id = data.get('variant_id')
    try:
        rating = float(data.get('rating'))
    except (TypeError, ValueError):
        return jsonify({"error": "rating must be a number between 1 and 5"}), 400
    if not variant_id:
        return jsonify({"error": "variant_id is required"}), 400

    try:
        variant = session.record_feedback(variant_id, rating, data.get('comment'))
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    if variant is None:
        return jsonify({"status": "ignored", "variant_id": variant_id})
    return jsonify({"status": "recorded", "variant": variant.to_dict()})


@app.route('/api/session/<session_id>/evolution')
def get_evolution(session_id: str):
    """Evolution stats and variants per role."""
    session, error = _get_session(session_id)
    if error:
        return error

    role_name = request.args.get('role')
    try:
        roles = [parse_role(role_name)] if role_name else list(ROLE_ORDER)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    return jsonify(session.orchestrator.evolution_view(roles))


@app.route('/api/session/<session_id>/population', methods=['GET', 'POST'])
def population(session_id: str):
    """Export (GET) or import (POST) the prompt population snapshot."""
    session, error = _get_session(session_id)
    if error:
        return error

    if request.method == 'GET':
        return jsonify(session.orchestrator.export_state())

    blob = request.get_json()
    if not isinstance(blob, dict) or 'populations' not in blob:
        return jsonify({"error": "Expected an exported population snapshot"}), 400
    try:
        session.orchestrator.import_state(blob)
    except (KeyError, TypeError, ValueError) as e:
        return jsonify({"error": f"Invalid snapshot: {e}"}), 400
    return jsonify({"status": "imported"})


@app.route('/api/session/<session_id>/debug')
def get_debug_log(session_id: str):
    """The completion client's recent request log."""
    session, error = _get_session(session_id)
    if error:
        return error
    entries = session.orchestrator.client.debug_log.entries()
    return jsonify([e.to_dict() for e in entries])


@app.route('/api/session/<session_id>/end', methods=['POST'])
def end_session(session_id: str):
    """End a session and save."""
    session, error = _get_session(session_id)
    if error:
        return error

    path = session.end_session()
    del sessions[session_id]

    return jsonify({
        "status": "ended",
        "saved_to": str(path) if path else None
    })


# ============================================================================
# Main
# ============================================================================

def run_server(host: str = "0.0.0.0", port: int = 5050, debug: bool = False):
    """Run the Flask server."""
    print(f"\n{'='*60}")
    print("TRIAD Observer Server")
    print(f"{'='*60}")
    print(f"Server: http://{host}:{port}")
    print(f"Configs: {CONFIG_DIR}")
    print(f"Sessions: {SESSIONS_DIR}")
    print(f"{'='*60}\n")

    app.run(host=host, port=port, debug=debug, threaded=True)


if __name__ == "__main__":
    run_server(debug=True)
