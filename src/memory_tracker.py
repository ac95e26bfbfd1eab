"""
Memory Tracker Module
=====================
Lays out the data area of a program built from a trace.

Every placeholder pointer produced by the program builder gets a region in
the target's data area:
- Calls are processed in order, an outer pointer before its inner pointers
- Regions are aligned to the pointee type and never overlap
- A program that does not fit the data area is rejected as a whole
"""

import logging
from dataclasses import dataclass
from typing import List

from program import PointerArg, Program, align_up, iter_args
from target_registry import Target

logger = logging.getLogger(__name__)


class MemoryAllocationError(RuntimeError):
    """The program's pointees cannot be laid out in the data area."""


@dataclass
class MemoryRegion:
    """A byte range of the data area owned by one pointer argument."""
    address: int
    size: int
    call_index: int

    @property
    def end(self) -> int:
        return self.address + self.size


class MemoryTracker:
    """Sequential allocator over ``[data_offset, data_end)``."""

    def __init__(self, target: Target):
        self.target = target
        self.regions: List[MemoryRegion] = []
        self._next = target.data_offset

    @property
    def bytes_used(self) -> int:
        return self._next - self.target.data_offset

    def allocate(self, size: int, alignment: int, call_index: int) -> int:
        if alignment > self.target.page_size:
            raise MemoryAllocationError(
                f"call #{call_index}: alignment {alignment} exceeds page size")
        address = align_up(self._next, alignment)
        region = MemoryRegion(address=address, size=max(size, 1), call_index=call_index)
        if region.end > self.target.data_end:
            raise MemoryAllocationError(
                f"call #{call_index}: {size} bytes do not fit the data area "
                f"({self.bytes_used} of {self.target.data_end - self.target.data_offset} used)")
        self.regions.append(region)
        self._next = region.end
        return address

    def fill_out_memory(self, prog: Program) -> None:
        """
        Resolve every placeholder pointer of ``prog``.

        Raises:
            MemoryAllocationError: the program does not fit the data area
        """
        for idx, call in enumerate(prog.calls):
            for arg in iter_args(call.args):
                if isinstance(arg, PointerArg) and arg.is_placeholder:
                    arg.address = self.allocate(arg.res.size(), arg.type.elem.alignment(), idx)
        self.check_overlaps()
        logger.debug(f"Laid out {len(self.regions)} regions, {self.bytes_used} bytes")

    def check_overlaps(self) -> None:
        ordered = sorted(self.regions, key=lambda r: r.address)
        for prev, cur in zip(ordered, ordered[1:]):
            if cur.address < prev.end:
                raise MemoryAllocationError(
                    f"region 0x{cur.address:x} overlaps region 0x{prev.address:x}")
