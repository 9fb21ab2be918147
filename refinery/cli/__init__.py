"""Refinery CLI."""
