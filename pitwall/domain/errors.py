from __future__ import annotations


class PitwallError(Exception):
    """Base de toutes les erreurs du moteur de notifications."""


class StoreUnavailable(PitwallError):
    """Planning injoignable: le tick courant est abandonné, on réessaie au suivant."""


class LedgerUnavailable(PitwallError):
    """Registre des messages injoignable. Les envois déjà faits ne sont pas annulés."""


class SendFailed(PitwallError):
    def __init__(self, channel_id: int | str, reason: str = ""):
        self.channel_id = channel_id
        self.reason = reason
        super().__init__(f"send to channel {channel_id} failed: {reason}" if reason
                         else f"send to channel {channel_id} failed")


class ScheduleInconsistency(PitwallError):
    def __init__(self, session_id: int | None, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"session {session_id}: {reason}")
