"""ACME certificate renewal and Docker Swarm secret rotation."""

__version__ = "1.0.0"
