"""Backup, restore and deploy orchestration for a multi-service compose stack."""

__version__ = '0.1.0'
