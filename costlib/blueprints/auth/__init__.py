from flask import Blueprint
bp = Blueprint("auth", __name__)
# Importing routes registers them on bp
from . import routes
