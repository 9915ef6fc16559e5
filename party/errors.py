"""
Error types shared by the party server and the guest/host client
"""


class PartyError(Exception):
    """Base exception for all party sync errors"""
    pass


class InvalidRequest(PartyError):
    """Malformed mutation body or wire payload"""
    pass


class InvalidValue(InvalidRequest):
    """Semantically invalid value (BPM not finite or not positive)"""
    pass


class ChannelWriteFailure(PartyError):
    """A write to a subscriber channel failed or timed out"""
    pass


class ClockOffsetUnavailable(PartyError):
    """No snapshot has been received yet, so the server clock is unknown"""
    pass


class PartyAPIError(PartyError):
    """Non-2xx response from the party server"""

    def __init__(self, status: int, message: str):
        super().__init__(f"{status}: {message}")
        self.status = status
        self.message = message
