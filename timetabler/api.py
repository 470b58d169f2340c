"""
REST API for the timetable generator.
Provides HTTP endpoints to create engine handles, load models, run
generations in the background and fetch their results.
"""
import logging
import os
import time
from threading import Thread
from typing import Any, Dict

from flask import Flask, abort, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from . import engine
from .config import EngineConfig
from .errors import ConfigError, InvalidStateError, ModelError
from .session import EngineState

logger = logging.getLogger(__name__)

# Create Flask app
app = Flask(__name__)
CORS(app)  # Enable CORS for all routes

app.config['MAX_CONTENT_LENGTH'] = 16 * 1024 * 1024  # 16 MB limit

# Engine records by id; handles and worker threads are kept beside them
engines: Dict[str, Dict[str, Any]] = {}
handles: Dict[str, engine.EngineHandle] = {}
threads: Dict[str, Thread] = {}

BUSY_STATES = (EngineState.SEARCHING, EngineState.FOUND, EngineState.IMPROVING)


@app.errorhandler(HTTPException)
def handle_http_error(e):
    """Return JSON instead of HTML for HTTP errors."""
    response = jsonify({
        'error': e.name,
        'message': e.description,
        'status': e.code,
    })
    response.status_code = e.code
    return response


def _engine_or_404(engine_id: str) -> engine.EngineHandle:
    if engine_id not in handles:
        abort(404, description=f"Engine {engine_id} not found")
    return handles[engine_id]


def _json_body() -> Any:
    body = request.get_json(silent=True)
    if body is None:
        abort(400, description="Request body must be JSON")
    return body


def _refresh(engine_id: str) -> Dict[str, Any]:
    record = engines[engine_id]
    session = handles[engine_id].session
    record['state'] = session.state.value
    record['last_error'] = session.last_error
    return record


@app.route('/api/v1/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    return jsonify({
        'status': 'healthy',
        'timestamp': time.time()
    })


@app.route('/api/v1/engines', methods=['POST'])
def create_engine():
    """Create an engine handle from an optional configuration body."""
    config = request.get_json(silent=True) or {}
    try:
        handle = engine.initialize(EngineConfig.from_mapping(config))
    except ConfigError as e:
        abort(400, description=str(e))

    handles[handle.id] = handle
    engines[handle.id] = {
        'id': handle.id,
        'state': handle.session.state.value,
        'config': handle.session.config.to_dict(),
        'model': None,
        'result': None,
        'last_error': '',
        'created_at': time.time(),
        'started_at': None,
        'completed_at': None,
    }
    return jsonify(engines[handle.id]), 201


@app.route('/api/v1/engines', methods=['GET'])
def list_engines():
    """List engine handles."""
    return jsonify({
        'engines': [_refresh(engine_id) for engine_id in list(engines)]
    })


@app.route('/api/v1/engines/<engine_id>', methods=['GET'])
def get_engine(engine_id):
    """Get details of a specific engine."""
    _engine_or_404(engine_id)
    return jsonify(_refresh(engine_id))


@app.route('/api/v1/engines/<engine_id>/model', methods=['POST'])
def load_model(engine_id):
    """Load raw timetabling input into an engine."""
    handle = _engine_or_404(engine_id)
    raw = _json_body()
    try:
        engine.load_model(handle, raw)
    except ModelError as e:
        response = jsonify({
            'error': 'Model Error',
            'kind': e.kind,
            'message': str(e),
            'entities': list(e.entities),
            'status': 422,
        })
        response.status_code = 422
        return response
    except InvalidStateError as e:
        abort(409, description=str(e))

    record = _refresh(engine_id)
    record['model'] = handle.session.model.summary()
    record['result'] = None
    return jsonify(record)


def run_generation_job(engine_id: str, previous):
    """Run a generation in a separate thread."""
    handle = handles.get(engine_id)
    record = engines.get(engine_id)
    if handle is None or record is None:
        logger.warning(f"Engine {engine_id} was deleted before its generation started")
        return
    try:
        result = engine.generate(handle, previous)
        record.update({
            'result': result.to_dict(),
            'exit_code': engine.exit_code(result),
            'completed_at': time.time(),
        })
        logger.info(f"Engine {engine_id} finished with status: {result.status.value}")

    except Exception as e:
        logger.error(f"Error in engine {engine_id}: {str(e)}")
        record.update({
            'error': str(e),
            'completed_at': time.time(),
        })


@app.route('/api/v1/engines/<engine_id>/generate', methods=['POST'])
def generate(engine_id):
    """Start a generation; poll the engine or its result for the outcome."""
    handle = _engine_or_404(engine_id)
    state = handle.session.state
    if state != EngineState.LOADED:
        abort(409, description=f"Cannot generate in state {state.value}")

    body = request.get_json(silent=True) or {}
    previous = body.get('previous')

    engines[engine_id].update({
        'result': None,
        'error': None,
        'started_at': time.time(),
        'completed_at': None,
    })
    thread = Thread(target=run_generation_job, args=(engine_id, previous))
    threads[engine_id] = thread
    thread.start()

    return jsonify({
        'engine_id': engine_id,
        'status': 'started',
        'message': 'Generation started'
    }), 202  # 202 Accepted


@app.route('/api/v1/engines/<engine_id>/result', methods=['GET'])
def get_result(engine_id):
    """Get the result of the latest generation."""
    handle = _engine_or_404(engine_id)
    if handle.session.state in BUSY_STATES:
        abort(409, description=f"Engine {engine_id} is still generating")
    record = engines[engine_id]
    if record.get('result') is None:
        abort(404, description=f"Engine {engine_id} has no result")
    return jsonify(dict(record['result'], exit_code=record['exit_code']))


@app.route('/api/v1/engines/<engine_id>/cancel', methods=['POST'])
def cancel(engine_id):
    """Ask a running generation to stop."""
    handle = _engine_or_404(engine_id)
    engine.cancel(handle)
    return jsonify({
        'message': f"Cancellation requested for engine {engine_id}"
    })


@app.route('/api/v1/engines/<engine_id>/error', methods=['GET'])
def last_error(engine_id):
    """Most recent failure detail of an engine."""
    handle = _engine_or_404(engine_id)
    return jsonify({
        'engine_id': engine_id,
        'last_error': engine.last_error(handle)
    })


@app.route('/api/v1/engines/<engine_id>', methods=['DELETE'])
def delete_engine(engine_id):
    """Clean up an engine and forget it."""
    handle = _engine_or_404(engine_id)

    if handle.session.state in BUSY_STATES:
        abort(400, description=f"Cannot delete engine {engine_id} while it is generating")

    engine.cleanup(handle)
    del handles[engine_id]
    del engines[engine_id]
    threads.pop(engine_id, None)

    return jsonify({
        'message': f"Engine {engine_id} deleted successfully"
    })


def create_app():
    """Create the Flask application."""
    return app


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port)
