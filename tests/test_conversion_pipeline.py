import os
import stat

import pytest

from conversion_config import ConversionConfig
from conversion_pipeline import TraceConversionPipeline, collect_trace_files
from corpus_db import CorpusDB
from corpus_packer import hash_string
from exec_encoding import EXEC_BUFFER_SIZE
from program import ProgramValidationError
from target_linux_amd64 import get_target_spec
from target_registry import UnknownTargetError, build_target

THREE_CALLS = """
    100 getpid() = 100
    100 dup(1) = 3
    100 close(3) = 0
"""


@pytest.fixture
def config(tmp_path):
    return ConversionConfig(corpus_path=str(tmp_path / "corpus.db"))


def records(config):
    return CorpusDB.open(config.corpus_path).records


def test_three_syscalls_become_one_record(config, write_trace):
    path = write_trace(THREE_CALLS)
    pipeline = TraceConversionPipeline(config)
    keys = pipeline.run([path])

    expected = b"getpid()\nr0 = dup(0x1)\nclose(r0)\n"
    assert keys == [hash_string(expected)]
    assert records(config)[keys[0]].val == expected
    assert pipeline.stats.programs_accepted == 1


def test_empty_file_is_skipped(config, write_trace):
    empty = write_trace("", name="a_empty")
    full = write_trace(THREE_CALLS, name="b_full")
    pipeline = TraceConversionPipeline(config)
    keys = pipeline.run([empty, full])

    assert len(keys) == 1
    assert pipeline.stats.files_attempted == 2
    assert pipeline.stats.files_empty == 1


def test_identical_programs_from_two_files_get_distinct_keys(config, write_trace):
    first = write_trace(THREE_CALLS, name="t1")
    second = write_trace(THREE_CALLS, name="t2")
    keys = TraceConversionPipeline(config).run([first, second])

    assert len(set(keys)) == 2
    assert keys[1] == keys[0] + "1"
    stored = records(config)
    assert stored[keys[0]].val == stored[keys[1]].val


def test_oversized_program_is_dropped(config, write_trace):
    data = "A" * (EXEC_BUFFER_SIZE + 4096)
    path = write_trace(f'100 write(1, "{data}", {len(data)}) = {len(data)}\n')
    pipeline = TraceConversionPipeline(config)
    keys = pipeline.run([path])

    assert keys == []
    assert pipeline.stats.discarded["too_large"] == 1
    assert records(config) == {}


def test_memory_failure_discards_only_that_process(tmp_path, write_trace):
    small = build_target(dict(get_target_spec(), page_size=64, num_pages=1))
    config = ConversionConfig(corpus_path=str(tmp_path / "corpus.db"))
    pipeline = TraceConversionPipeline(config, target=small)
    path = write_trace(f"""
        100 clone(child_stack=NULL, flags=SIGCHLD) = 101
        100 write(1, "{'A' * 100}", 100) = 100
        101 getpid() = 101
    """)
    keys = pipeline.run([path])

    assert len(keys) == 1
    assert pipeline.stats.discarded["memory"] == 1
    assert pipeline.stats.processes_attempted == 2


def test_deserialize_dir_gets_one_file_per_program(tmp_path, write_trace):
    out_dir = tmp_path / "progs"
    config = ConversionConfig(corpus_path=str(tmp_path / "corpus.db"),
                              deserialize_dir=str(out_dir))
    path = write_trace("""
        100 clone(child_stack=NULL, flags=SIGCHLD) = 101
        100 getppid() = 1
        101 getpid() = 101
    """, name="trace")
    TraceConversionPipeline(config).run([path])

    assert sorted(os.listdir(out_dir)) == ["trace0", "trace1"]
    assert (out_dir / "trace0").read_bytes() == b"getppid()\n"
    assert (out_dir / "trace1").read_bytes() == b"getpid()\n"
    assert stat.S_IMODE((out_dir / "trace0").stat().st_mode) == 0o640


def test_validation_failure_is_fatal(config, write_trace, monkeypatch):
    path = write_trace(THREE_CALLS)

    def broken(self):
        raise ProgramValidationError("broken")
    monkeypatch.setattr("program.Program.validate", broken)

    with pytest.raises(ProgramValidationError):
        TraceConversionPipeline(config).run([path])


def test_unknown_target(tmp_path):
    with pytest.raises(UnknownTargetError):
        TraceConversionPipeline(ConversionConfig(os="plan9", arch="mips"))


def test_collect_trace_files(tmp_path):
    (tmp_path / "b").write_text("")
    (tmp_path / "a").write_text("")
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "c").write_text("")

    assert collect_trace_files(directory=tmp_path) == [tmp_path / "a", tmp_path / "b"]
    assert collect_trace_files(file=tmp_path / "a") == [tmp_path / "a"]
    with pytest.raises(ValueError):
        collect_trace_files()
    with pytest.raises(ValueError):
        collect_trace_files(tmp_path / "a", tmp_path)


def test_process_without_supported_calls_is_discarded(config, write_trace):
    path = write_trace("""
        100 clone(child_stack=NULL, flags=SIGCHLD) = 101
        100 getpid() = 100
        101 exit_group(0) = ?
    """, name="a_fork")
    only_exit = write_trace("100 exit_group(0) = ?\n", name="b_exit")
    pipeline = TraceConversionPipeline(config)
    keys = pipeline.run([path, only_exit])

    assert keys == [hash_string(b"getpid()\n")]
    assert list(records(config)) == keys
    assert pipeline.stats.programs_accepted == 1
    assert pipeline.stats.processes_attempted == 3
    assert pipeline.stats.discarded["unsupported"] == 2
    assert pipeline.stats.files_empty == 0
