"""
Routing strategies for router nodes.

Defines four strategies, selected by a router node's ``mode``:
- FailoverStrategy: Prioritized targets, first success wins
- RoundRobinStrategy: Cursor-based rotation over outputs
- ParallelStrategy: Concurrent fan-out with per-target settled results
- LoadBalanceStrategy: Random choice among targets not in error
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from .exceptions import ExhaustedFailoverError, NoHealthyTargetError
from .models import Connection, Node, NodeState, RouterMode

if TYPE_CHECKING:
    from .engine import ExecutionEngine

logger = logging.getLogger(__name__)


class RoutingStrategy(ABC):
    """
    Abstract base class for routing strategies.

    A strategy receives the router node and its active outgoing connections
    and is responsible for routing the payload downstream. Every strategy
    returns the payload extended with ``routed``, ``strategy`` and the
    selected target(s).
    """

    mode: RouterMode

    @abstractmethod
    async def route(
        self,
        engine: "ExecutionEngine",
        router: Node,
        data: dict[str, Any],
        outputs: list[Connection],
        context: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Route a payload from a router node.

        Args:
            engine: Engine used to route data downstream
            router: The router node
            data: Incoming payload
            outputs: Active outgoing connections, in insertion order
            context: Request context passed through unchanged

        Returns:
            Routing result
        """
        pass

    def _result(self, data: dict[str, Any], **fields: Any) -> dict[str, Any]:
        return {**data, "routed": True, "strategy": self.mode.value, **fields}


def _is_eligible(engine: "ExecutionEngine", target_id: str) -> bool:
    return engine.graph.node_exists(target_id) and (
        engine.graph.get_node(target_id).state != NodeState.ERROR
    )


class FailoverStrategy(RoutingStrategy):
    """
    Try targets by descending priority until one succeeds.

    Ties keep insertion order. Targets that are missing or currently in the
    error state are skipped without an attempt.
    """

    mode = RouterMode.FAILOVER

    async def route(self, engine, router, data, outputs, context):
        attempts: dict[str, str] = {}
        for connection in sorted(outputs, key=lambda c: c.priority, reverse=True):
            target_id = connection.target
            if not _is_eligible(engine, target_id):
                attempts[target_id] = "skipped"
                logger.debug(f"Failover on '{router.id}' skipped '{target_id}'")
                continue

            try:
                result = await engine.route_data(router.id, target_id, data, context)
            except Exception as e:
                attempts[target_id] = str(e)
                logger.warning(f"Failover on '{router.id}': target '{target_id}' failed: {e}")
                continue

            logger.debug(f"Failover on '{router.id}' selected '{target_id}'")
            return self._result(data, target=target_id, result=result)

        raise ExhaustedFailoverError(router.id, attempts)


class RoundRobinStrategy(RoutingStrategy):
    """
    Rotate through outputs using a cursor kept in the router's data.

    The cursor is read and advanced before the first await, so concurrent
    invocations on one router always observe distinct cursor values.
    """

    mode = RouterMode.ROUND_ROBIN

    async def route(self, engine, router, data, outputs, context):
        if not outputs:
            raise NoHealthyTargetError(router.id)

        cursor = int(router.data.get("rr_index", 0))
        selected = outputs[cursor % len(outputs)]
        router.data["rr_index"] = cursor + 1

        logger.debug(f"Round-robin on '{router.id}' selected '{selected.target}' (cursor={cursor})")
        result = await engine.route_data(router.id, selected.target, data, context)
        return self._result(data, target=selected.target, result=result)


class ParallelStrategy(RoutingStrategy):
    """
    Route to every output concurrently.

    Never raises as a whole: each target contributes a settled entry,
    either ``{"target", "status": "fulfilled", "value"}`` or
    ``{"target", "status": "rejected", "reason"}``.
    """

    mode = RouterMode.PARALLEL

    async def route(self, engine, router, data, outputs, context):
        targets = [connection.target for connection in outputs]
        settled = await asyncio.gather(
            *(engine.route_data(router.id, target_id, data, context) for target_id in targets),
            return_exceptions=True,
        )

        results: list[dict[str, Any]] = []
        for target_id, outcome in zip(targets, settled):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.debug(f"Parallel target '{target_id}' of '{router.id}' rejected: {outcome}")
                results.append({"target": target_id, "status": "rejected", "reason": outcome})
            else:
                results.append({"target": target_id, "status": "fulfilled", "value": outcome})

        return self._result(data, targets=targets, results=results)


class LoadBalanceStrategy(RoutingStrategy):
    """
    Pick uniformly at random among outputs whose target is not in error.

    The choice is drawn from the engine's ``rng`` so tests can seed it.
    """

    mode = RouterMode.LOAD_BALANCE

    async def route(self, engine, router, data, outputs, context):
        healthy = [c for c in outputs if _is_eligible(engine, c.target)]
        if not healthy:
            raise NoHealthyTargetError(router.id)

        selected = engine.rng.choice(healthy)
        logger.debug(
            f"Load-balance on '{router.id}' selected '{selected.target}' "
            f"from {len(healthy)} healthy targets"
        )
        result = await engine.route_data(router.id, selected.target, data, context)
        return self._result(data, target=selected.target, result=result)


_STRATEGIES: dict[RouterMode, RoutingStrategy] = {
    strategy.mode: strategy
    for strategy in (
        FailoverStrategy(),
        RoundRobinStrategy(),
        ParallelStrategy(),
        LoadBalanceStrategy(),
    )
}


def get_strategy(mode: RouterMode | str) -> RoutingStrategy:
    """
    Look up the strategy for a router mode.

    Raises:
        ValueError: If mode is not a RouterMode value
    """
    return _STRATEGIES[RouterMode(mode)]
