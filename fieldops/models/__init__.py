"""
FieldOps Service Workflow
Shared SQLAlchemy handle.

Every model module imports ``db`` from here:

    from fieldops.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
