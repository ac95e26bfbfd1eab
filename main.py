#!/usr/bin/env python3
"""
Main Pipeline Entry Point
=========================
Converts strace output into a seed corpus for a coverage-guided kernel fuzzer.

Record a trace with:
    strace -o trace -a 1 -s 65500 -v -xx -f -Xraw ./a.out

Pipeline stages:
1. Trace Parsing - Convert raw strace output to a process tree
2. Program Conversion - One validated program per traced process
3. Corpus Packing - Store the programs in the corpus database
"""

import sys
import logging
import argparse
from pathlib import Path
from typing import List, Optional

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent / 'src'))

from conversion_config import ConversionConfig
from conversion_pipeline import TraceConversionPipeline, collect_trace_files
from corpus_db import CorpusDBError
from program import ProgramValidationError
from target_registry import UnknownTargetError
from tree_walker import TraceTreeCycleError


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None):
    """Setup logging configuration."""
    log_level = logging.DEBUG if verbose else logging.INFO

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='w'))

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        handlers=handlers,
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='trace2corpus - strace output to fuzzer corpus conversion',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Convert a single trace
  python3 main.py --file trace

  # Convert every trace in a directory and keep the text programs
  python3 main.py --dir traces/ --deserialize progs/

  # Add to an existing corpus instead of replacing it
  python3 main.py --dir traces/ --corpus workdir/corpus.db --keep-corpus
        """
    )

    inputs = parser.add_mutually_exclusive_group(required=True)
    inputs.add_argument(
        '--file',
        type=Path,
        help='Trace file to convert'
    )
    inputs.add_argument(
        '--dir',
        type=Path,
        help='Directory of trace files to convert (not recursive)'
    )

    parser.add_argument(
        '--deserialize',
        type=Path,
        help='Directory to store the text form of every accepted program'
    )
    parser.add_argument(
        '--corpus',
        help='Corpus database path (default: corpus.db)'
    )
    parser.add_argument(
        '--config',
        type=Path,
        help='JSON file with conversion settings'
    )
    parser.add_argument(
        '--os',
        help='Target operating system (default: linux)'
    )
    parser.add_argument(
        '--arch',
        help='Target architecture (default: amd64)'
    )
    parser.add_argument(
        '--keep-corpus',
        action='store_true',
        help='Keep records of an existing corpus database'
    )
    parser.add_argument(
        '--log-file',
        type=Path,
        help='Also write the log to this file'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    setup_logging(args.verbose, args.log_file)

    try:
        config = ConversionConfig.from_file(args.config) if args.config else ConversionConfig()
        config.update({
            'os': args.os,
            'arch': args.arch,
            'corpus_path': args.corpus,
            'deserialize_dir': str(args.deserialize) if args.deserialize else None,
        })
        if args.keep_corpus:
            config.fresh_corpus = False

        trace_files = collect_trace_files(args.file, args.dir)
        pipeline = TraceConversionPipeline(config)
        pipeline.run(trace_files)
    except (UnknownTargetError, ProgramValidationError, CorpusDBError,
            TraceTreeCycleError, OSError, ValueError) as e:
        logging.error(f"Conversion failed: {e}", exc_info=args.verbose)
        return 1

    logging.info("Finished!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
