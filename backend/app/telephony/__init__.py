"""
CallRoute - Telephony Integration Module

Components:
- router: HTTP endpoints for call webhooks and the call API
- providers: Control document rendering per provider
- session_store: Per-call routing engine ownership
- models: Webhook request / API response models
- privacy: Phone number masking and E.164 validation

Phone numbers are masked and never logged in cleartext.
"""

from .privacy import is_e164, mask_phone_number, normalize_e164

__all__ = [
    "is_e164",
    "mask_phone_number",
    "normalize_e164",
]
