__all__ = ["OrderServiceError", "ValidationError", "NotFoundError", "ConflictError",
           "InvalidTransitionError", "PersistenceError", "BroadcastDeliveryError"]


class OrderServiceError(Exception):
    status_code = 500


# Request exceptions
class ValidationError(OrderServiceError):
    status_code = 400


class NotFoundError(OrderServiceError):
    status_code = 404


class ConflictError(OrderServiceError):
    status_code = 409


class InvalidTransitionError(OrderServiceError):
    status_code = 422


# Store exceptions
class PersistenceError(OrderServiceError):
    status_code = 500


# Real-time exceptions, never sent to a client
class BroadcastDeliveryError(OrderServiceError):
    pass
