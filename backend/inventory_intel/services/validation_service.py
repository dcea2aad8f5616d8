r"""backend\inventory_intel\services\validation_service.py"""

from __future__ import annotations

import math
from typing import Optional

from ..core.errors import InvalidInputError
from ..models.schemas import SalesHistory


class ValidationService:
    """Boundary checks applied to sales histories before they reach the core."""

    def run(self, history: SalesHistory, store_id: Optional[str] = None, product_id: Optional[str] = None) -> dict:
        checks = []

        def add(name: str, ok: bool, msg: str = "") -> None:
            checks.append({"name": name, "ok": bool(ok), "message": msg})

        if store_id is not None or product_id is not None:
            ok = (store_id is None or history.store_id == store_id) and (
                product_id is None or history.product_id == product_id
            )
            add("key_matches", ok, f"have: {history.store_id}/{history.product_id}")

        bad_quantities = [
            obs.date.isoformat()
            for obs in history.observations
            if not math.isfinite(obs.quantity) or obs.quantity < 0
        ]
        add("quantities_non_negative", not bad_quantities, f"dates: {bad_quantities[:5]}")

        bad_prices = [
            obs.date.isoformat()
            for obs in history.observations
            if obs.unit_price is not None and (not math.isfinite(obs.unit_price) or obs.unit_price < 0)
        ]
        add("prices_non_negative", not bad_prices, f"dates: {bad_prices[:5]}")

        decreasing = [
            later.date.isoformat()
            for earlier, later in zip(history.observations, history.observations[1:])
            if later.date < earlier.date
        ]
        add("dates_non_decreasing", not decreasing, f"out of order at: {decreasing[:5]}")

        overall = all(x["ok"] for x in checks)
        return {"ok": overall, "checks": checks}

    def validate_history(
        self,
        history: SalesHistory,
        store_id: Optional[str] = None,
        product_id: Optional[str] = None,
    ) -> SalesHistory:
        """Return ``history`` unchanged or raise ``InvalidInputError`` naming the first failed check."""

        report = self.run(history, store_id=store_id, product_id=product_id)
        if report["ok"]:
            return history
        failed = next(check for check in report["checks"] if not check["ok"])
        raise InvalidInputError(
            f"sales history rejected: {failed['name']} ({failed['message']})",
            store_id=history.store_id,
            product_id=history.product_id,
        )
