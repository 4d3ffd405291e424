"""Chat memory exceptions."""


class ChatMemoryError(Exception):
    """Base chat memory error."""


class ChatNotFoundError(ChatMemoryError):
    """Referenced chat does not exist."""

    def __init__(self, chat_id: str) -> None:
        self.chat_id = chat_id
        super().__init__(f"Chat not found: {chat_id}")


class ChatValidationError(ChatMemoryError):
    """Input rejected before anything was written."""


class AnalysisError(ChatMemoryError):
    """Summarizer call failed or timed out."""


class StorageError(ChatMemoryError):
    """Underlying persistence I/O failed."""
