"""
In-process stand-in for the external graph engine.

Each iteration walks the execution intervals in order (the user block, then
the item block). Partitions inside an interval are disjoint sets of vertices
and run concurrently on a thread pool; the next interval starts only after
the previous one has finished.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, Sequence

from loguru import logger

from graphmf.data.graph import InteractionGraph

from .controller import GraphContext, TrainingController

IterationCallback = Callable[[TrainingController, GraphContext], None]


class GraphDriver:
    def __init__(
        self,
        graph: InteractionGraph,
        *,
        num_workers: int = 1,
        num_partitions: Optional[int] = None,
    ) -> None:
        if num_workers < 1:
            raise ValueError("num_workers must be at least one.")
        self.graph = graph
        self.num_workers = int(num_workers)
        self.num_partitions = int(num_partitions or num_workers)

    def _run_partition(
        self, program: TrainingController, vertex_ids: Sequence[int], context: GraphContext
    ) -> None:
        for vertex_id in vertex_ids:
            program.update(self.graph.vertex(vertex_id), context)

    def run_iteration(self, program: TrainingController, executor: ThreadPoolExecutor | None) -> GraphContext:
        context = GraphContext(
            iteration=program.iteration_num,
            num_edges=self.graph.num_edges,
            id_translate=self.graph.translate,
        )
        program.begin_iteration(context)
        for partitions in self.graph.intervals(self.num_partitions):
            if executor is None or len(partitions) == 1:
                for partition in partitions:
                    self._run_partition(program, partition, context)
                continue
            futures = [
                executor.submit(self._run_partition, program, partition, context)
                for partition in partitions
            ]
            for future in futures:
                future.result()
        program.end_iteration(context)
        return context

    def run(
        self,
        program: TrainingController,
        *,
        on_iteration_end: IterationCallback | None = None,
    ) -> TrainingController:
        """Iterate until the program reports convergence."""
        logger.debug(
            "[{}] driving {} vertices / {} edges with {} worker(s), {} partition(s) per interval",
            program.model_id,
            self.graph.num_vertices,
            self.graph.num_edges,
            self.num_workers,
            self.num_partitions,
        )
        executor = ThreadPoolExecutor(max_workers=self.num_workers) if self.num_workers > 1 else None
        try:
            while not program.has_converged():
                context = self.run_iteration(program, executor)
                if on_iteration_end is not None:
                    on_iteration_end(program, context)
        finally:
            if executor is not None:
                executor.shutdown(wait=True)
        return program
