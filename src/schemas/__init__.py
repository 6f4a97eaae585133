# src/schemas/__init__.py
"""Pydantic schemas for treatment records and their reports"""
from .base_schemas import *
from .treatment_schemas import *
