"""
Domain models, scoring, configuration and errors.
"""
