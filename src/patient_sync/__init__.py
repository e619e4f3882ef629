"""
Incremental patient record sync from paginated clinical APIs into PostgreSQL.
"""

__version__ = "0.1.0"
