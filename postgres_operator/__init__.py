"""Kubernetes operator for highly available PostgreSQL clusters"""

__version__ = "0.1.0"
