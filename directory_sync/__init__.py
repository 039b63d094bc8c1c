"""
Directory Group Sync - Reconcile group memberships between directory systems.

This package provides batch jobs that read a desired membership list (CSV exports,
LDAP groups, JumpCloud device inventory or another directory's group) and
reconcile it against Microsoft Graph or JumpCloud groups.
"""

__version__ = "1.0.0"
__author__ = "Directory Sync Team"
