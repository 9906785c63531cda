"""Error taxonomy shared by the controllers and the reconcile scheduler."""

from __future__ import annotations

from typing import Optional


class ReconcileError(Exception):
	"""Base class for errors raised during a reconcile pass."""

	reason = "Error"
	requeue = True

	def __init__(self, message: str, requeue_after: Optional[float] = None) -> None:
		super().__init__(message)
		self.message = message
		self.requeue_after = requeue_after

	def to_status(self) -> dict:
		return {"type": self.reason, "message": self.message}


class NotReady(ReconcileError):
	"""A precondition is not met yet. Expected; requeue with backoff."""

	reason = "NotReady"


class TransientUnavailable(ReconcileError):
	"""A cluster or peer call failed in a retryable way."""

	reason = "TransientUnavailable"


class FieldConflict(ReconcileError):
	"""Another field manager owns a field this controller must set."""

	reason = "FieldConflict"
	requeue = False


class SpecInvalid(ReconcileError):
	"""The declared spec cannot be turned into manifests."""

	reason = "SpecInvalid"
	requeue = False


class Unrecoverable(ReconcileError):
	"""The run cannot make progress (e.g. manager crashed past its budget)."""

	reason = "Unrecoverable"
	requeue = False


class OwnerGone(ReconcileError):
	"""The parent resource disappeared while a pass was in flight."""

	reason = "OwnerGone"
	requeue = False
