#!/usr/bin/env python3
"""
Trace Conversion Pipeline
=========================
Orchestrates the complete trace-to-corpus conversion.

Pipeline stages:
1. Trace Parsing - Convert raw strace output to a process tree
2. Program Conversion - Build, lay out, validate and size-check one
   program per traced process
3. Corpus Packing - Store every accepted program in the corpus database
"""

import logging
import os
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

import trace_parser
from call_selector import CallSelector, DefaultCallSelector
from conversion_config import ConversionConfig
from corpus_packer import pack
from exec_encoding import prog_is_too_large
from memory_tracker import MemoryAllocationError
from program import Program
from target_registry import Target, get_target
from tree_walker import parse_tree

logger = logging.getLogger(__name__)

DISCARD_MEMORY = "memory"
DISCARD_TOO_LARGE = "too_large"
DISCARD_EMPTY = "empty"
DISCARD_UNSUPPORTED = "unsupported"


@dataclass
class PipelineStats:
    """Counters for one conversion run."""
    files_attempted: int = 0
    files_empty: int = 0
    processes_attempted: int = 0
    programs_accepted: int = 0
    records_skipped: int = 0
    records_packed: int = 0
    discarded: Counter = field(default_factory=Counter)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def as_dict(self) -> Dict[str, object]:
        return {
            'files_attempted': self.files_attempted,
            'files_empty': self.files_empty,
            'processes_attempted': self.processes_attempted,
            'programs_accepted': self.programs_accepted,
            'records_skipped': self.records_skipped,
            'records_packed': self.records_packed,
            'discarded': dict(self.discarded),
        }


def collect_trace_files(file: Optional[Union[str, Path]] = None,
                        directory: Optional[Union[str, Path]] = None) -> List[Path]:
    """
    Resolve the input selection into a list of trace files.

    A directory is listed non-recursively, in name order.

    Raises:
        ValueError: neither or both of ``file`` and ``directory`` are given
        OSError: the directory cannot be listed
    """
    if (file is None) == (directory is None):
        raise ValueError("exactly one of a trace file or a trace directory must be given")
    if file is not None:
        return [Path(file)]
    directory = Path(directory)
    return sorted(p for p in directory.iterdir() if p.is_file())


class TraceConversionPipeline:
    """Converts trace files into a fuzzer corpus."""

    def __init__(self, config: ConversionConfig, target: Optional[Target] = None,
                 selector: Optional[CallSelector] = None):
        """
        Initialize the conversion pipeline.

        Args:
            config: Conversion settings
            target: Target Context; looked up from ``config.os``/``config.arch`` if omitted
            selector: Call selection policy; ``DefaultCallSelector`` if omitted

        Raises:
            UnknownTargetError: no descriptor catalog for the configured OS/arch
        """
        self.config = config
        self.target = target or get_target(config.os, config.arch)
        self.selector = selector or DefaultCallSelector(self.target, config.unsupported_calls)
        self.stats = PipelineStats()

        logger.info("=" * 70)
        logger.info("Trace Conversion Pipeline Initialized")
        logger.info("=" * 70)
        logger.info(f"Target: {self.target.name} ({len(self.target.syscalls)} syscalls)")
        logger.info(f"Corpus: {self.config.corpus_path}")
        if self.config.deserialize_dir:
            logger.info(f"Deserialize directory: {self.config.deserialize_dir}")

    def run(self, trace_files: List[Path]) -> List[str]:
        """
        Convert ``trace_files`` and pack the survivors into the corpus.

        Returns:
            Corpus keys of the stored programs
        """
        self.stats.start_time = datetime.now()
        progs = self.parse_traces(trace_files)

        logger.info("=" * 70)
        logger.info("STAGE 3: CORPUS PACKING")
        logger.info("=" * 70)
        keys = pack(progs, self.config.corpus_path, fresh=self.config.fresh_corpus,
                    version=self.config.db_version)
        self.stats.records_packed = len(keys)
        self.stats.end_time = datetime.now()
        self._log_summary()
        return keys

    def parse_traces(self, trace_files: List[Path]) -> List[Program]:
        """Parse and convert every trace file, returning the accepted programs."""
        logger.info("=" * 70)
        logger.info(f"STAGE 1-2: PARSING AND CONVERTING {len(trace_files)} TRACES")
        logger.info("=" * 70)

        if self.config.deserialize_dir:
            Path(self.config.deserialize_dir).mkdir(parents=True, exist_ok=True)

        accepted: List[Program] = []
        total = len(trace_files)
        for n, trace_file in enumerate(trace_files, 1):
            logger.info(f"Parsing file {n}/{total}: {Path(trace_file).name}")
            accepted.extend(self.convert_file(Path(trace_file)))

        logger.info(f"Successfully converted traces: {len(accepted)} programs accepted")
        return accepted

    def convert_file(self, trace_file: Path) -> List[Program]:
        """
        Convert one trace file.

        Raises:
            ProgramValidationError: a built program is inconsistent with the target
            TraceTreeCycleError: the file's process tree has a cycle
            OSError: the file cannot be read
        """
        self.stats.files_attempted += 1
        tree = trace_parser.parse(trace_file)
        if tree is None:
            logger.info(f"File {trace_file.name} is empty, skipping")
            self.stats.files_empty += 1
            self.stats.discarded[DISCARD_EMPTY] += 1
            return []

        accepted: List[Program] = []
        contexts = parse_tree(tree, self.target, self.selector)
        for i, ctx in enumerate(contexts):
            self.stats.processes_attempted += 1
            self.stats.records_skipped += ctx.skipped_calls
            if not ctx.prog.calls:
                logger.debug(f"pid {ctx.pid}: no supported calls, discarding")
                self.stats.discarded[DISCARD_UNSUPPORTED] += 1
                continue

            try:
                ctx.fill_out_memory()
            except MemoryAllocationError as e:
                logger.debug(f"pid {ctx.pid}: failed to fill out memory: {e}")
                self.stats.discarded[DISCARD_MEMORY] += 1
                continue

            ctx.prog.validate()

            if prog_is_too_large(ctx.prog, self.config.exec_buffer_size):
                logger.debug(f"pid {ctx.pid}: program is too large")
                self.stats.discarded[DISCARD_TOO_LARGE] += 1
                continue

            accepted.append(ctx.prog)
            self.stats.programs_accepted += 1
            if self.config.deserialize_dir:
                self._write_program(trace_file, i, ctx.prog)
        return accepted

    def _write_program(self, trace_file: Path, index: int, prog: Program) -> None:
        out = Path(self.config.deserialize_dir) / f"{trace_file.name}{index}"
        with open(out, 'wb') as f:
            f.write(prog.serialize())
        os.chmod(out, 0o640)

    def _log_summary(self) -> None:
        duration = (self.stats.end_time - self.stats.start_time).total_seconds()
        logger.info("=" * 70)
        logger.info("CONVERSION COMPLETE")
        logger.info("=" * 70)
        logger.info(f"  Files attempted: {self.stats.files_attempted} "
                    f"({self.stats.files_empty} empty)")
        logger.info(f"  Processes attempted: {self.stats.processes_attempted}")
        logger.info(f"  Programs accepted: {self.stats.programs_accepted}")
        logger.info(f"  Unsupported records skipped: {self.stats.records_skipped}")
        for reason, count in sorted(self.stats.discarded.items()):
            logger.info(f"  Discarded ({reason}): {count}")
        logger.info(f"  Corpus records written: {self.stats.records_packed}")
        logger.info(f"  Total execution time: {duration:.2f} seconds")
