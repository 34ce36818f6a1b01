"""
Internal Portal: Request Approval Workflow
SQLAlchemy extension and model registry.

Usage:
    from portal.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
