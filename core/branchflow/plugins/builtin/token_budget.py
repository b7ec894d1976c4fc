"""Token-budget node: tracks tokens spent per execution."""

from dataclasses import asdict, dataclass, field
from typing import Any

from branchflow.plugins.base import ExecutionContext, NodePlugin, PluginMetadata

DEFAULT_TOTAL_BUDGET = 100_000
DEFAULT_WARNING_THRESHOLD = 0.8


@dataclass
class Budget:
    total: int
    remaining: int
    used: int = 0
    details: dict[str, int] = field(default_factory=dict)  # {source: tokens}

    @classmethod
    def fresh(cls, total: int) -> "Budget":
        return cls(total=total, remaining=total)

    def spend(self, tokens: int, source: str) -> None:
        self.used += tokens
        self.remaining = max(0, self.total - self.used)
        self.details[source] = self.details.get(source, 0) + tokens


class TokenBudgetPlugin(NodePlugin):
    """
    Operations (``input["operation"]``):
        check: report the budget
        update: add ``tokensUsed`` under ``source``
        reset: start over

    Output: ``{"budget": {total, remaining, used, details}, "exceedsBudget": bool}``.
    Budgets are kept per execution.
    """

    metadata = PluginMetadata(
        id="token-budget-plugin",
        name="Token Budget Manager",
        version="1.0.0",
        description="Manages token usage throughout an execution",
    )
    node_type = "token-budget"
    input_schema = {
        "type": "object",
        "properties": {
            "operation": {"type": "string", "enum": ["check", "update", "reset"]},
            "tokensUsed": {"type": "number"},
            "source": {"type": "string"},
        },
        "required": ["operation"],
    }
    output_schema = {
        "type": "object",
        "properties": {
            "budget": {
                "type": "object",
                "properties": {
                    "total": {"type": "number"},
                    "remaining": {"type": "number"},
                    "used": {"type": "number"},
                    "details": {"type": "object", "additionalProperties": {"type": "number"}},
                },
            },
            "exceedsBudget": {"type": "boolean"},
        },
    }
    config_schema = {
        "type": "object",
        "properties": {
            "totalBudget": {"type": "number", "default": DEFAULT_TOTAL_BUDGET},
            "warningThreshold": {"type": "number", "default": DEFAULT_WARNING_THRESHOLD},
        },
    }

    def __init__(self) -> None:
        self._budgets: dict[str, Budget] = {}

    def get_budget(self, execution_id: str) -> Budget | None:
        return self._budgets.get(execution_id)

    async def process(self, input: Any, config: dict[str, Any], context: ExecutionContext):
        input = input if isinstance(input, dict) else {}
        operation = input.get("operation", "check")
        total = int(config.get("totalBudget", DEFAULT_TOTAL_BUDGET))
        threshold = float(config.get("warningThreshold", DEFAULT_WARNING_THRESHOLD))

        budget = self._budgets.get(context.execution_id)
        if budget is None or budget.total != total or operation == "reset":
            budget = Budget.fresh(total)
            self._budgets[context.execution_id] = budget

        if operation == "update":
            budget.spend(int(input.get("tokensUsed", 0) or 0), input.get("source", "unknown"))

        exceeds = budget.remaining <= 0
        if exceeds:
            context.logger.warning("Token budget exceeded")
        elif budget.used >= budget.total * threshold:
            context.logger.warning(f"Token budget running low: {budget.remaining} tokens remaining")

        return {"budget": asdict(budget), "exceedsBudget": exceeds}
