"""Declarative convergence and verification for development workstations."""
