"""Exceptions raised by render engines and recognised by the coordinator."""

USER_CANCELLATION_SENTINEL = "terminated by user"


class UserCancellation(Exception):
    """The generation stopped because the user asked it to."""

    def __init__(self, message: str = f"Render loop {USER_CANCELLATION_SENTINEL}"):
        super().__init__(message)


class GenerationFailure(Exception):
    """Any genuine engine failure. The original error is kept as __cause__."""


class EngineNotConfigured(GenerationFailure):
    pass


def is_user_cancellation(exc: BaseException) -> bool:
    """Engines may re-raise cancellation under their own type, so match the message too."""
    if isinstance(exc, UserCancellation):
        return True
    return USER_CANCELLATION_SENTINEL in str(exc)
