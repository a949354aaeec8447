"""Errors raised by the storage collaborator."""


class RecordNotFound(LookupError):
    """A card or stage does not exist in the caller's scope."""


class RecordInvalid(ValueError):
    """A write was rejected because it would break a record constraint."""
