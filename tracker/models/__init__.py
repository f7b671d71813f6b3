"""
Project Tracker: ORM models.

``db`` is the single Flask-SQLAlchemy handle shared by every model module;
value types used by the authorization core (roles, actors, entity
snapshots) live next to the tables they are read from.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
