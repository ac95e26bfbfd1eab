import pytest

from trace_parser import TraceNode, TraceTree, parse
from tree_walker import TraceTreeCycleError, parse_tree, walk_tree


def make_tree(pids, ptree, root=1):
    tree = TraceTree(filename="synthetic", root_pid=root)
    for pid in pids:
        tree.trace_map[pid] = TraceNode(pid=pid)
    tree.ptree = ptree
    return tree


def test_parents_precede_descendants_and_siblings_keep_order():
    tree = make_tree([1, 2, 3, 4, 5], {1: [2, 4], 2: [3], 4: [5]})
    order = walk_tree(tree, 1, lambda node: node.pid)
    assert order == [1, 2, 3, 4, 5]


def test_absent_child_is_skipped():
    tree = make_tree([1, 2, 3], {1: [9, 2], 2: [3]})
    assert walk_tree(tree, 1, lambda node: node.pid) == [1, 2, 3]


def test_missing_root_yields_nothing():
    tree = make_tree([1], {}, root=None)
    assert walk_tree(tree, None, lambda node: node.pid) == []
    assert walk_tree(tree, 42, lambda node: node.pid) == []


def test_revisit_fails_fast():
    tree = make_tree([1, 2], {1: [2], 2: [1]})
    with pytest.raises(TraceTreeCycleError):
        walk_tree(tree, 1, lambda node: node.pid)


def test_deep_tree_does_not_recurse():
    depth = 5000
    tree = make_tree(range(depth), {pid: [pid + 1] for pid in range(depth - 1)}, root=0)
    assert walk_tree(tree, 0, lambda node: node.pid) == list(range(depth))


def test_parse_tree_builds_one_context_per_process(target, selector, write_trace):
    path = write_trace("""
        100 clone(child_stack=NULL, flags=SIGCHLD) = 101
        100 clone(child_stack=NULL, flags=SIGCHLD) = 102
        101 getpid() = 101
        102 getuid() = 0
        100 getppid() = 1
    """)
    contexts = parse_tree(parse(path), target, selector)

    assert [ctx.pid for ctx in contexts] == [100, 101, 102]
    assert [c.meta.name for c in contexts[0].prog.calls] == ["getppid"]
    assert contexts[0].skipped_calls == 2
