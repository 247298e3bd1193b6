"""Persistence schema for Clerk."""
