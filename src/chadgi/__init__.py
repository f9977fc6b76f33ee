"""ChadGI: autonomous task loop driving an AI coding agent through a GitHub project board."""

__version__ = "0.1.0"
