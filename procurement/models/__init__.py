"""
Procurement Platform: ORM models.

All models share the single Flask-SQLAlchemy handle defined here:

    from procurement.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
