"""Turns a parameter-set collection into the ordered list of iterations to run."""

import random
from typing import Iterable, Optional

import structlog

from paramrun.errors import NoIterationsError
from paramrun.parameterized.models import (
    IterationMode,
    ParameterizedTestDefinition,
    ParameterSet,
    ResolvedIteration,
)
from paramrun.parameterized.substitution import find_missing_parameters

logger = structlog.get_logger()


class ParameterSetResolver:
    """Resolves which parameter sets a run executes, and in what order.

    Resolution rules, applied in order:
    1. Sets belonging to another test are ignored.
    2. An explicit selection restricts the pool to the selected ids. Without
       one, the presence of any ``only`` set restricts the pool to ``only``
       sets (whatever their ``skip`` flag is).
    3. ``skip`` sets are removed.
    4. The remainder is sorted by ``order_index``, ties broken by ``id``.
       In random mode that order is then shuffled.

    The resulting iterations carry a fixed ``iteration_index`` 0..n-1 that is
    never reassigned afterwards.

    Example:
        resolver = ParameterSetResolver()
        iterations = resolver.resolve(definition, parameter_sets)
        for iteration in iterations:
            print(iteration.iteration_index, iteration.parameter_set.name)
    """

    def __init__(self, rng: Optional[random.Random] = None):
        """Initialize the resolver.

        Args:
            rng: Random source for random iteration mode (seed it for a
                reproducible order)
        """
        self.rng = rng or random.Random()

    def resolve(
        self,
        definition: ParameterizedTestDefinition,
        parameter_sets: Iterable[ParameterSet],
        selected_set_ids: Optional[Iterable[str]] = None,
    ) -> list[ResolvedIteration]:
        """Resolve the execution list.

        Raises:
            NoIterationsError: If no parameter set is left to execute
        """
        candidates = []
        for param_set in parameter_sets:
            if param_set.test_id is not None and param_set.test_id != definition.id:
                logger.warning(
                    "Ignoring parameter set owned by another test",
                    parameter_set_id=param_set.id,
                    owner=param_set.test_id,
                    test_id=definition.id,
                )
                continue
            candidates.append(param_set)

        selected = set(selected_set_ids) if selected_set_ids else None
        if selected is not None:
            known_ids = {param_set.id for param_set in candidates}
            unknown = sorted(selected - known_ids)
            if unknown:
                logger.warning(
                    "Selected parameter sets not found",
                    test_id=definition.id,
                    unknown_ids=unknown,
                )
            pool = [param_set for param_set in candidates if param_set.id in selected]
        elif any(param_set.only for param_set in candidates):
            pool = [param_set for param_set in candidates if param_set.only]
        else:
            pool = candidates

        active = [param_set for param_set in pool if not param_set.skip]
        active.sort(key=lambda param_set: (param_set.order_index, param_set.id))
        if definition.iteration_mode == IterationMode.RANDOM:
            self.rng.shuffle(active)

        if not active:
            raise NoIterationsError(
                definition.id,
                reason=self._describe_empty(candidates, pool, selected),
            )

        for param_set in active:
            missing = find_missing_parameters(definition, param_set)
            if missing:
                logger.warning(
                    "Parameter set does not provide all placeholders",
                    test_id=definition.id,
                    parameter_set_id=param_set.id,
                    missing=sorted(missing),
                )

        iterations = [
            ResolvedIteration(iteration_index=index, parameter_set=param_set)
            for index, param_set in enumerate(active)
        ]

        logger.info(
            "Resolved parameter sets",
            test_id=definition.id,
            available=len(candidates),
            resolved=len(iterations),
            selected=len(selected) if selected is not None else None,
        )
        return iterations

    @staticmethod
    def _describe_empty(
        candidates: list[ParameterSet],
        pool: list[ParameterSet],
        selected: Optional[set[str]],
    ) -> str:
        if not candidates:
            return "test has no parameter sets"
        if selected is not None and not pool:
            return "none of the selected parameter sets exist"
        return "all candidate parameter sets are skipped"
