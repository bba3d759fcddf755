"""Exceptions shared by the dispatchers and their handlers."""


class NonRetryableError(Exception):
    """
    Raised by a handler when retrying cannot help, such as a malformed
    payload or a transition the entity's current state forbids.

    Events are dead-lettered at once; tasks go straight to failed.
    """
    pass
