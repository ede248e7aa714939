from flask import Blueprint, jsonify

bp = Blueprint("library", __name__)


def service_error_response(err):
    """JSON body + status for a ServiceError."""
    return jsonify(err.to_dict()), err.status_code


# Importing the API modules is what registers their routes
from . import api_codes   # /library/api/codes/preview, /codes/validate
from . import api_nodes   # /library/api/hierarchy, /divisions, /sections, ...
