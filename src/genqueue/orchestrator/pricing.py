"""Per-request cost lookup for batch cost estimates."""

from __future__ import annotations

from dataclasses import dataclass, field

DEFAULT_UNIT_COST = 1.0


@dataclass(slots=True)
class PricingTable:
    """Unit cost per (engine, model), with ``*`` wildcards."""

    entries: dict[tuple[str, str], float] = field(default_factory=dict)
    default_unit_cost: float = DEFAULT_UNIT_COST

    @classmethod
    def from_string(cls, raw: str, *, default_unit_cost: float = DEFAULT_UNIT_COST) -> PricingTable:
        """Parse ``GENQUEUE_PRICING``.

        Format:
        - `engine:model:unit_cost`
        - multiple entries separated by `,`
        - supports wildcards in engine/model (`*`)

        Malformed entries are skipped.
        """

        parsed: dict[tuple[str, str], float] = {}
        for entry in raw.split(","):
            value = entry.strip()
            if not value:
                continue
            parts = [part.strip() for part in value.split(":")]
            if len(parts) != 3:
                continue
            engine, model, unit_cost = parts
            try:
                parsed[(engine.lower(), model)] = float(unit_cost)
            except ValueError:
                continue
        return cls(entries=parsed, default_unit_cost=default_unit_cost)

    def unit_cost(self, engine: str, model: str) -> float:
        key_engine = engine.strip().lower()
        for key in ((key_engine, model.strip()), (key_engine, "*"), ("*", "*")):
            if key in self.entries:
                return self.entries[key]
        return self.default_unit_cost
