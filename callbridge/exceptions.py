"""Exceptions raised across the call bridge."""


class BridgeError(Exception):
    """Base exception for call bridge errors."""

    pass


class AdmissionError(BridgeError):
    """Raised when an inbound call cannot be admitted."""

    pass


class DuplicateCallError(AdmissionError):
    """Raised when a live session already exists for the call identifier."""

    def __init__(self, call_id: str):
        super().__init__(f"Call {call_id} already has an active session")
        self.call_id = call_id


class SpeechSessionError(AdmissionError):
    """Raised when the speech AI session cannot be created or joined."""

    pass


class TransportError(BridgeError):
    """Raised when a telephony or speech transport fails mid-call."""

    pass


class TransportClosed(TransportError):
    """Raised when a transport has closed.

    ``clean`` is True for a normal close (stop event, close code 1000/1001).
    """

    def __init__(self, message: str = "transport closed", *, clean: bool, code: int | None = None):
        super().__init__(message)
        self.clean = clean
        self.code = code


class ParseError(BridgeError):
    """Raised when a frame from either transport cannot be parsed."""

    pass


class TelephonyConfigError(BridgeError):
    """Raised when telephony credentials are missing."""

    pass
