"""Declarative provisioner for a containerized web app stack on Azure."""

__version__ = "0.1.0"
