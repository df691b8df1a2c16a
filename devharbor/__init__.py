"""
devharbor - local development infrastructure orchestration

Installs, runs and observes containerized development services and
per-project containers on the local container runtime.
"""

__version__ = "0.1.0"
