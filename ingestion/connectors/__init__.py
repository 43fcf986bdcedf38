"""
Export Connectors
=================

Source and target connectors for the export engine.
"""

from .mysql_connector import MySQLConnector
from .postgres_connector import PostgresConnector

__all__ = ["MySQLConnector", "PostgresConnector"]
