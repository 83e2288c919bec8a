from __future__ import annotations


class ConfigurationError(ValueError):
    """Invalid labeller setup, detected before any sweep runs."""


class DataError(ValueError):
    """Input data inconsistent with the configuration.

    Raised mid-run; the label image must be treated as undefined afterwards.
    """
