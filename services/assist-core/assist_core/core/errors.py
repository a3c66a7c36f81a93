"""
Error taxonomy for the conversation engine
"""


class AssistError(Exception):
    """Base class for engine errors"""


class TransportError(AssistError):
    """Network or HTTP failure calling the AI responder"""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class PersistenceError(AssistError):
    """Failure reading or writing conversation, log or event rows"""


class ValidationError(AssistError):
    """Input rejected before any network call or state mutation"""


class TrainingRejectedError(ValidationError):
    """Knowledge base cannot enter training in its current state"""


class ConfigurationError(AssistError):
    """No usable AI agent configuration"""


class NotFoundError(AssistError):
    """Referenced row does not exist"""
