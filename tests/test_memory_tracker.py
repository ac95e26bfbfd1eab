import pytest

from call_selector import DefaultCallSelector
from memory_tracker import MemoryAllocationError, MemoryTracker
from program import PointerArg, iter_args
from program_builder import gen_program
from target_linux_amd64 import get_target_spec
from target_registry import build_target
from trace_parser import TraceCall, TraceNode, parse_args


def build(target, selector, *lines):
    calls = [TraceCall(pid=1, name=name, args=parse_args(args), ret=ret)
             for name, args, ret in lines]
    return gen_program(TraceNode(pid=1, calls=calls), target, selector)


def pointers(prog):
    return [arg for call in prog.calls for arg in iter_args(call.args)
            if isinstance(arg, PointerArg) and not arg.null]


def test_every_placeholder_is_resolved_without_overlap(target, selector):
    ctx = build(target, selector,
                ("open", '"/etc/hosts", O_RDONLY', 3),
                ("writev", '1, [{iov_base="ab", iov_len=2}, {iov_base="cde", iov_len=3}], 2', 5),
                ("nanosleep", "{tv_sec=0, tv_nsec=1000}, NULL", 0))
    ctx.fill_out_memory()

    ptrs = pointers(ctx.prog)
    assert len(ptrs) == 5
    assert not any(p.is_placeholder for p in ptrs)
    for p in ptrs:
        assert target.data_offset <= p.address < target.data_end

    regions = sorted(ctx.memory.regions, key=lambda r: r.address)
    for prev, cur in zip(regions, regions[1:]):
        assert prev.end <= cur.address


def test_outer_pointer_is_laid_out_before_inner(target, selector):
    ctx = build(target, selector,
                ("writev", '1, [{iov_base="ab", iov_len=2}], 1', 2))
    ctx.fill_out_memory()

    vec = ctx.prog.calls[0].args[1]
    inner = vec.res.inner[0].inner[0]
    assert vec.address == target.data_offset
    assert inner.address == target.data_offset + 16


def test_regions_are_aligned_to_pointee(target, selector):
    ctx = build(target, selector,
                ("open", '"a", O_RDONLY', 3),
                ("nanosleep", "{tv_sec=0, tv_nsec=1}, NULL", 0))
    ctx.fill_out_memory()

    req = ctx.prog.calls[1].args[0]
    assert req.address % 8 == 0
    assert req.address == target.data_offset + 8


def test_allocation_failures(target):
    tracker = MemoryTracker(target)
    with pytest.raises(MemoryAllocationError):
        tracker.allocate(16, target.page_size * 2, 0)

    tracker.allocate(target.data_end - target.data_offset - 4, 1, 0)
    with pytest.raises(MemoryAllocationError):
        tracker.allocate(8, 1, 1)


def test_program_too_big_for_data_area_is_rejected():
    small = build_target(dict(get_target_spec(), page_size=64, num_pages=1))
    ctx = build(small, DefaultCallSelector(small),
                ("write", '1, "%s", 100' % ("A" * 100), 100),
                ("write", '1, "x", 1', 1))
    with pytest.raises(MemoryAllocationError):
        ctx.fill_out_memory()
