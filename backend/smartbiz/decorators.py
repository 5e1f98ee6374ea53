# Overview: Request decorators for API routes.

from functools import wraps

from flask import current_app, jsonify

from .errors import EngineError
from .extensions import db


def handle_engine_errors(f):
    """
    Convert engine failures into JSON error responses.

    EngineError -> {"error", "code", "details"} with the error's HTTP status.
    Anything else is logged with its traceback and reported as a 500.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except EngineError as e:
            db.session.rollback()
            return jsonify(e.to_dict()), e.status
        except Exception:
            db.session.rollback()
            current_app.logger.exception("Unhandled error in %s", f.__name__)
            return jsonify({"error": "Internal server error", "code": "INTERNAL_ERROR"}), 500

    return decorated_function
