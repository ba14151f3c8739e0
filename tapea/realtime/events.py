"""Event names of the ride-coordination realtime channel."""

# Connection lifecycle (local pseudo-events, never sent on the wire)
CONNECT = "connect"
DISCONNECT = "disconnect"

# Acknowledgement frames
ACK = "ack"

# Driver session
DRIVER_JOIN = "driver:join"
DRIVER_STATUS = "driver:status"

# Order board (driver)
ORDER_NEW = "order:new"
ORDERS_PENDING = "orders:pending"
ORDER_TAKEN = "order:taken"
ORDER_EXPIRED = "order:expired"
ORDER_ACCEPT = "order:accept"
ORDER_DECLINE = "order:decline"
ORDER_ACCEPT_SUCCESS = "order:accept:success"
ORDER_ACCEPT_ERROR = "order:accept:error"

# Client session / ride search
CLIENT_JOIN = "client:join"
CLIENT_JOIN_ERROR = "client:join:error"
ORDER_DRIVER_ASSIGNED = "order:driver:assigned"

# Ride room
RIDE_JOIN = "ride:join"
RIDE_STATUS_UPDATE = "ride:status:update"
RIDE_STATUS_CHANGED = "ride:status:changed"
RIDE_CANCEL = "ride:cancel"
RIDE_CANCELLED = "ride:cancelled"

# Payment
PAYMENT_CONFIRM = "payment:confirm"
PAYMENT_RETRY = "payment:retry"
PAYMENT_SWITCH_CASH = "payment:switch-cash"
PAYMENT_STATUS = "payment:status"
PAYMENT_RETRY_READY = "payment:retry:ready"
PAYMENT_SWITCHED_TO_CASH = "payment:switched-to-cash"

# Location
LOCATION_DRIVER_UPDATE = "location:driver:update"
LOCATION_CLIENT_UPDATE = "location:client:update"
LOCATION_DRIVER = "location:driver"
LOCATION_CLIENT = "location:client"


def credentials_payload(role: str, credential: str) -> dict:
    """Role-specific credential field: drivers send their session id, clients their ride token."""
    if role == "driver":
        return {"sessionId": credential}
    return {"clientToken": credential}
