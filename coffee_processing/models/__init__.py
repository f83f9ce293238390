"""
Coffee Processing Core
SQLAlchemy extension instance shared by every model module.

Usage:
    from coffee_processing.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
