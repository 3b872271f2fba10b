"""Parley realtime chat coordination."""
