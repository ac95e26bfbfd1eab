from trace_parser import (
    ArrayToken, CallToken, IntExpr, StringToken, StructToken, TraceParser, eval_bytes,
    eval_int, parse, parse_args, parse_int,
)


def test_parse_int_forms():
    assert parse_int("42") == 42
    assert parse_int("0x1f") == 0x1f
    assert parse_int("0644") == 0o644
    assert parse_int("-1") == -1
    assert parse_int("O_RDONLY") is None


def test_eval_int_flag_union_and_helpers(target):
    consts = target.const_map
    assert eval_int(IntExpr(("O_RDWR", "O_CREAT")), consts) == 0x42
    assert eval_int(IntExpr(("NULL",)), consts) == 0
    assert eval_int(IntExpr(("UNKNOWN_FLAG",)), consts) is None
    assert eval_int(CallToken("htons", [IntExpr(("80",))]), consts) == 0x5000
    addr = CallToken("inet_addr", [StringToken(b"127.0.0.1")])
    assert eval_bytes(addr) == b"\x7f\x00\x00\x01"
    assert eval_int(addr, consts) == 0x0100007f


def test_parse_args_nested_values():
    args = parse_args('3, {sa_family=AF_INET, sin_port=htons(80), '
                      'sin_addr=inet_addr("127.0.0.1")}, 16')
    assert args[0] == IntExpr(("3",))
    assert isinstance(args[1], StructToken)
    assert args[1].get("sin_port") == CallToken("htons", [IntExpr(("80",))])
    assert args[2] == IntExpr(("16",))

    args = parse_args('[3, 4], O_CLOEXEC')
    assert args[0] == ArrayToken([IntExpr(("3",)), IntExpr(("4",))])


def test_parse_args_strings_and_named_arguments():
    args = parse_args(r'1, "\x68\x69\n"..., 3')
    assert args[1] == StringToken(b"hi\n", truncated=True)

    args = parse_args('child_stack=NULL, flags=CLONE_VM|SIGCHLD, child_tidptr=0x7f0')
    assert args == [IntExpr(("NULL",)), IntExpr(("CLONE_VM", "SIGCHLD")), IntExpr(("0x7f0",))]


def test_parse_simple_trace(write_trace):
    path = write_trace("""
        1234  open("/etc/passwd", O_RDONLY|O_CLOEXEC) = 3
        1234  read(3, "root:x:0:0"..., 4096) = 4096
        1234  open("/nope", O_RDONLY) = -1 ENOENT (No such file or directory)
        1234  close(3) = 0
        1234  +++ exited with 0 +++
    """)
    tree = parse(path)

    assert tree.root_pid == 1234
    calls = tree.trace_map[1234].calls
    assert [c.name for c in calls] == ["open", "read", "open", "close"]
    assert calls[0].ret == 3 and not calls[0].failed
    assert calls[2].ret == -1 and calls[2].errno == "ENOENT" and calls[2].failed


def test_unfinished_and_resumed_lines_merge(write_trace):
    path = write_trace("""
        100 read(0,  <unfinished ...>
        101 getpid() = 101
        100 <... read resumed>"ab", 2) = 2
    """)
    tree = parse(path)

    read = tree.trace_map[100].calls[0]
    assert read.name == "read"
    assert read.args[1] == StringToken(b"ab")
    assert read.ret == 2
    assert tree.trace_map[101].calls[0].name == "getpid"


def test_fork_builds_process_tree(write_trace):
    path = write_trace("""
        100 clone(child_stack=NULL, flags=CLONE_CHILD_CLEARTID|SIGCHLD, child_tidptr=0x7f) = 101
        [pid   101] 12:00:00.123456 getpid() = 101
        100 wait4(-1, NULL, 0, NULL) = 101
        --- SIGCHLD {si_signo=SIGCHLD, si_code=CLD_EXITED} ---
    """)
    tree = parse(path)

    assert tree.root_pid == 100
    assert tree.ptree[100] == [101]
    assert tree.trace_map[101].ppid == 100
    assert [c.name for c in tree.trace_map[100].calls] == ["clone", "wait4"]


def test_empty_trace_returns_none(write_trace):
    path = write_trace("\n")
    assert parse(path) is None


def test_statistics_count_unparsed_lines(write_trace):
    path = write_trace("""
        1 getpid() = 1
        this is not strace output
    """)
    parser = TraceParser(path)
    parser.parse()
    stats = parser.get_statistics()
    assert stats['total_lines'] == 2
    assert stats['total_calls'] == 1
    assert stats['parse_errors'] == 1
