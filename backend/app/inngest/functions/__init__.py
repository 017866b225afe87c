"""
Inngest Functions Registry.

This module exports all Inngest functions for registration with the serve endpoint.
"""

from .affiliate import (
    approve_commissions_fn,
    store_credit_awards_fn,
    sync_connect_status_fn,
    affiliate_functions,
)

# All functions to register with Inngest
all_functions = [
    *affiliate_functions,
]

__all__ = [
    "all_functions",
    "affiliate_functions",
    "approve_commissions_fn",
    "store_credit_awards_fn",
    "sync_connect_status_fn",
]
