"""
Mock backends for local development and integration tests.
"""
