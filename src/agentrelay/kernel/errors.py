from __future__ import annotations


class RelayError(Exception):
    """Base for domain errors that operator operations turn into error envelopes."""
