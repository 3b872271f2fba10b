"""Parley backend application."""
