# orderbridge/errors.py


class OrderBridgeError(Exception):
    """Base class for every error the bridge raises on purpose."""


class NotFoundError(OrderBridgeError):
    pass


class UnauthorizedError(OrderBridgeError):
    pass


class ExternalTransportError(OrderBridgeError):
    """A messaging-platform or notification call failed."""


class InvalidTransitionError(OrderBridgeError):
    def __init__(self, order_id: str, current: str, target: str):
        self.order_id = order_id
        self.current = current
        self.target = target
        super().__init__(f"Order {order_id} cannot move from '{current}' to '{target}'.")


class ExpiredCapabilityError(OrderBridgeError):
    pass


class ChannelTopicError(OrderBridgeError):
    """A channel topic does not match the expected encoding."""


class OutOfStockError(OrderBridgeError):
    pass
