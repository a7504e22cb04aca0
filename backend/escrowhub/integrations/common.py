from __future__ import annotations


class IntegrationMisconfiguredError(RuntimeError):
    pass


class IntegrationRequestError(RuntimeError):
    """Provider could not be reached or answered with a failure envelope."""
