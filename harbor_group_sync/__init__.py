"""
Harbor LDAP Group Sync - Reconcile declared LDAP user groups against Harbor.

This package lists, creates, renames and deletes Harbor user groups of the
LDAP type, matching them to the declared state by their LDAP distinguished
name across the v1 and v2 Harbor APIs.
"""

__version__ = "1.0.0"
