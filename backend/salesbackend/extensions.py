# Overview: Flask extension instances shared across the package.

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
