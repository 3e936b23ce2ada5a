"""
Mock calorie tracker API (FastAPI + PyJWT).
"""
