import json

import pytest

import main
from conversion_config import ConversionConfig, DEFAULT_UNSUPPORTED_CALLS
from corpus_db import CorpusDB

TRACE = """
100 getpid() = 100
100 dup(1) = 3
100 close(3) = 0
"""


def test_input_selection_is_required(capsys):
    with pytest.raises(SystemExit) as exc:
        main.main([])
    assert exc.value.code == 2
    assert "one of the arguments --file --dir is required" in capsys.readouterr().err


def test_file_and_dir_are_exclusive(tmp_path):
    with pytest.raises(SystemExit) as exc:
        main.main(["--file", str(tmp_path / "t"), "--dir", str(tmp_path)])
    assert exc.value.code == 2


def test_convert_directory(tmp_path):
    traces = tmp_path / "traces"
    traces.mkdir()
    (traces / "t1").write_text(TRACE)
    (traces / "t2").write_text("")
    corpus = tmp_path / "corpus.db"
    progs = tmp_path / "progs"

    rc = main.main(["--dir", str(traces), "--corpus", str(corpus),
                    "--deserialize", str(progs), "--log-file", str(tmp_path / "run.log")])

    assert rc == 0
    assert len(CorpusDB.open(corpus).records) == 1
    assert (progs / "t10").exists()
    assert "CONVERSION COMPLETE" in (tmp_path / "run.log").read_text()


def test_keep_corpus_and_config_file(tmp_path):
    trace = tmp_path / "trace"
    trace.write_text(TRACE)
    corpus = tmp_path / "corpus.db"
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({"corpus_path": str(corpus)}))

    assert main.main(["--file", str(trace), "--config", str(config_file)]) == 0
    assert main.main(["--file", str(trace), "--config", str(config_file), "--keep-corpus"]) == 0
    assert len(CorpusDB.open(corpus).records) == 2


def test_fatal_errors_exit_non_zero(tmp_path):
    trace = tmp_path / "trace"
    trace.write_text(TRACE)

    assert main.main(["--file", str(trace), "--os", "plan9",
                      "--corpus", str(tmp_path / "c.db")]) == 1
    assert main.main(["--file", str(tmp_path / "missing"),
                      "--corpus", str(tmp_path / "c.db")]) == 1
    assert main.main(["--file", str(trace),
                      "--corpus", str(tmp_path / "no" / "dir" / "c.db")]) == 1


def test_config_overlay(tmp_path, caplog):
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({"arch": "arm64", "bogus": 1, "deserialize_dir": None}))

    config = ConversionConfig.from_file(config_file)
    assert config.arch == "arm64"
    assert config.os == "linux"
    assert config.unsupported_calls == DEFAULT_UNSUPPORTED_CALLS
    assert "Ignoring unknown config key: bogus" in caplog.text

    saved = tmp_path / "saved.json"
    config.save(saved)
    assert ConversionConfig.from_file(saved) == config


def test_config_rejects_non_object(tmp_path):
    config_file = tmp_path / "config.json"
    config_file.write_text("[1, 2]")
    with pytest.raises(ValueError):
        ConversionConfig.from_file(config_file)
    config_file.write_text("{not json")
    with pytest.raises(ValueError):
        ConversionConfig.from_file(config_file)
