"""
CrisisBridge Crisis Risk Assessment & Escalation Subsystem
==========================================================

A Python framework for detecting crisis risk in conversational text and
routing it to qualified human responders.  Provides multi-signal risk
scoring with false-positive suppression, protocol-driven escalation with
per-step timeouts and fallbacks, responder matching under capacity limits,
encrypted and audited support channels, and rolling safety monitoring.

DISCLAIMER: This software is not a medical device.  Risk scores are
rule-based routing signals for trained human responders.  They do not
diagnose, treat, or replace emergency services.
"""

__version__ = "0.1.0"
