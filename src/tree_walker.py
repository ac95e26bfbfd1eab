"""
Tree Walker Module
==================
Flattens a trace's process tree into per-process build results.

Processes are visited depth-first in pre-order: a parent is built before
any of its descendants, and siblings keep the order the tree lists them in.
"""

import logging
from typing import Callable, List, Optional, TypeVar

from call_selector import CallSelector
from program_builder import ProgramContext, gen_program
from target_registry import Target
from trace_parser import TraceNode, TraceTree

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TraceTreeCycleError(RuntimeError):
    """A process id was reached twice while walking a trace tree."""


def walk_tree(tree: TraceTree, pid: Optional[int], build: Callable[[TraceNode], T]) -> List[T]:
    """
    Visit ``pid`` and its descendants, calling ``build`` once per process.

    Child ids without a node in ``tree.trace_map`` are skipped. Uses an
    explicit stack so deep process trees do not hit the recursion limit.

    Raises:
        TraceTreeCycleError: the tree links a process to one of its ancestors
    """
    results: List[T] = []
    if pid is None:
        return results

    visited = set()
    stack = [pid]
    while stack:
        current = stack.pop()
        if current in visited:
            raise TraceTreeCycleError(
                f"{tree.filename}: pid {current} visited twice, process tree is not acyclic")
        visited.add(current)

        node = tree.trace_map.get(current)
        if node is None:
            continue
        results.append(build(node))
        stack.extend(reversed(tree.ptree.get(current, [])))
    return results


def parse_tree(tree: TraceTree, target: Target, selector: CallSelector,
               pid: Optional[int] = None) -> List[ProgramContext]:
    """Build one program context per traced process, parents first."""
    start = tree.root_pid if pid is None else pid
    contexts = walk_tree(tree, start, lambda node: gen_program(node, target, selector))
    logger.debug(f"{tree.filename}: built {len(contexts)} process contexts")
    return contexts
