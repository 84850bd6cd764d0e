"""Geometry and street-name text helpers."""
