"""
CallRoute - Backend Application Package

This package contains the routing backend:
- Webhook and call API endpoints
- Per-call routing engine and escalation rules
- Provider adapters (TwiML, ACS JSON)
- Collaborator interfaces (classifier, human queue, provisioning, audit)
"""

__version__ = "0.1.0"
