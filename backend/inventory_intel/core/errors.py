r"""backend\inventory_intel\core\errors.py

Error taxonomy shared by the forecasting, accuracy and reorder services.

Every error is a ``ValueError`` so the API layer can keep treating them as
rejected requests, and each one carries enough context (store, product,
horizon, reason) for a caller to decide between retrying and surfacing the
problem to a user.
"""

from __future__ import annotations

from typing import Any, Optional


class InventoryIntelligenceError(ValueError):
    """Base class for all errors raised by the inventory intelligence core."""

    code: str = "inventory_intelligence_error"
    retryable: bool = False

    def __init__(
        self,
        reason: str,
        *,
        store_id: Optional[str] = None,
        product_id: Optional[str] = None,
        horizon: Optional[int] = None,
    ) -> None:
        self.reason = reason
        self.store_id = store_id
        self.product_id = product_id
        self.horizon = horizon
        super().__init__(self._render())

    def _render(self) -> str:
        parts = [
            f"{name}={value}"
            for name, value in (
                ("store", self.store_id),
                ("product", self.product_id),
                ("horizon", self.horizon),
            )
            if value is not None
        ]
        if not parts:
            return self.reason
        return f"{self.reason} ({', '.join(parts)})"

    def context(self) -> dict[str, Any]:
        """Return a JSON friendly description of the failure."""

        return {
            "error": self.code,
            "message": self.reason,
            "store_id": self.store_id,
            "product_id": self.product_id,
            "horizon": self.horizon,
            "retryable": self.retryable,
        }


class InsufficientDataError(InventoryIntelligenceError):
    """History spans fewer distinct sale dates than a model needs."""

    code = "insufficient_data"


class ModelFitFailure(InventoryIntelligenceError):
    """Numerical failure inside a demand model (singular fit, non-convergence).

    Recovered locally by the moving-average fallback and never surfaced.
    """

    code = "model_fit_failure"
    retryable = True


class NoOverlapError(InventoryIntelligenceError):
    """Accuracy scoring was requested but no forecast date has a realized sale."""

    code = "no_overlap"


class InvalidInputError(InventoryIntelligenceError):
    """Input violated a boundary precondition (negative quantity, bad ordering, ...)."""

    code = "invalid_input"
