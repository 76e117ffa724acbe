"""Persistent settings for growclone."""
