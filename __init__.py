"""
License Client Service for the Pro add-on

This service activates, deactivates and periodically re-validates the
add-on's license key against the remote license server, and decides whether
premium features are unlocked. It keeps the last known-good result locally
so a temporarily unreachable server does not lock out a paying customer.
"""

__version__ = "1.0.0"
