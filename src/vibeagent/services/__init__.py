"""Deployment services: settings and credential resolution."""
