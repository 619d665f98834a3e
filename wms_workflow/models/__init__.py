"""
Supply-chain automation engine: persistence layer.

The single Flask-SQLAlchemy handle shared by every model module and service.
Model modules are imported by ``create_app`` so ``db.create_all()`` and
Flask-Migrate see every table.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
