"""
Directory Sync - Reconcile Active Directory group membership with local application accounts.

This package keeps the lost-and-found application's user accounts and roles in
agreement with configured directory groups, and validates directory credentials
at login time.
"""

__version__ = "1.0.0"
__author__ = "Lost & Found Team"
