from enum import Enum


class SessionState(str, Enum):
    """
    Connection lifecycle:

        DISCONNECTED → CONNECTING → AWAITING_REGISTRATION → ACTIVE
              ↑______________|_______________|________________|
                   (connect failure / close / registration timeout)
    """
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_REGISTRATION = "awaiting_registration"
    ACTIVE = "active"
