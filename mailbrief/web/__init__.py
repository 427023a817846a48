"""
Web management interface for MailBrief.
Provides the REST API over runs, profiles, digests and usage.
"""

from mailbrief.web.api import create_app

__all__ = ["create_app"]
