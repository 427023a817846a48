"""
MailBrief: persona-driven email triage and daily digest pipeline.
"""

__version__ = "0.1.0"
