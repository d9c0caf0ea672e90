"""
Error taxonomy. Transition rejections are returned as values (see order_state.Rejection);
the exceptions here cover lookups, aggregate mutations and collaborator I/O.
"""


class FulfillmentError(Exception):
    """Base class for all fulfillment core errors."""


class UnknownStage(FulfillmentError):
    """Raised when a stage id is not one of the catalog constants."""
    def __init__(self, stage_id: object):
        self.stage_id = stage_id
        super().__init__(f"unknown stage: {stage_id!r}")


class OrderNotFound(FulfillmentError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"order not found: {order_id}")


class EmptyAssignment(FulfillmentError):
    """Raised when an assignment must name at least one staff member."""
    def __init__(self):
        super().__init__("select at least one staff member to assign")


class AttachmentNotFound(FulfillmentError):
    def __init__(self, attachment_id: str):
        self.attachment_id = attachment_id
        super().__init__(f"attachment not found: {attachment_id}")


class OrderNotEditable(FulfillmentError):
    """Raised when editing line items or fees of a completed or failed order."""
    def __init__(self, order_id: str, stage: str):
        self.order_id = order_id
        self.stage = stage
        super().__init__(f"order {order_id} is {stage} and can no longer be edited")


class CollaboratorFailure(FulfillmentError):
    """Wraps an I/O error from the order store, attachment store or staff directory. Not retried here."""
    def __init__(self, operation: str, cause: BaseException):
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} failed: {cause}")
