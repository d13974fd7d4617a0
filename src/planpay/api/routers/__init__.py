from . import payments, webhooks

__all__ = ["payments", "webhooks"]
