from program import ConstArg, DataArg, GroupArg, PointerArg, ResultArg
from program_builder import ReturnCache, gen_program
from target_registry import Dir, ResourceType
from trace_parser import TraceCall, TraceNode, parse_args


def node_of(*lines, pid=100):
    calls = []
    for name, args, ret in lines:
        calls.append(TraceCall(pid=pid, name=name, args=parse_args(args), ret=ret,
                               errno="ENOENT" if ret < 0 else None))
    return TraceNode(pid=pid, calls=calls)


def test_builds_typed_calls_with_resource_flow(target, selector):
    node = node_of(
        ("open", '"/tmp/f", O_RDWR|O_CREAT, 0644', 3),
        ("write", '3, "hello", 5', 5),
        ("close", "3", 0),
    )
    ctx = gen_program(node, target, selector)
    ctx.fill_out_memory()
    ctx.prog.validate()

    open_call, write_call, close_call = ctx.prog.calls
    assert open_call.args[1].val == 0x42
    assert open_call.args[2].val == 0o644
    assert write_call.args[0].res is open_call.ret
    assert write_call.args[2].val == 5
    assert close_call.args[0].res is open_call.ret
    assert ctx.prog.serialize() == (
        b"r0 = open(&(0x20000000)='/tmp/f\\x00', 0x42, 0x1a4)\n"
        b"write(r0, &(0x20000007)='hello', 0x5)\n"
        b"close(r0)\n"
    )


def test_unsupported_records_are_skipped(target, selector):
    node = node_of(
        ("getpid", "", 100),
        ("exit_group", "0", 0),
        ("frobnicate", "1", 0),
        ("getuid", "", 0),
    )
    ctx = gen_program(node, target, selector)

    assert [c.meta.name for c in ctx.prog.calls] == ["getpid", "getuid"]
    assert ctx.skipped_calls == 2


def test_failed_call_result_is_not_referenced(target, selector):
    node = node_of(
        ("open", '"/nope", O_RDONLY', -1),
        ("close", "-1", -1),
    )
    ctx = gen_program(node, target, selector)

    close_arg = ctx.prog.calls[1].args[0]
    assert close_arg.res is None
    assert close_arg.val == 0xffffffff


def test_missing_producer_fallback(target, selector):
    node = node_of(
        ("write", '1, "x", 1', 1),
        ("write", '7, "x", 1', 1),
        ("newfstatat", 'AT_FDCWD, "/etc", 0x7ffd0000, 0', 0),
    )
    ctx = gen_program(node, target, selector)

    stdout_arg = ctx.prog.calls[0].args[0]
    unknown_arg = ctx.prog.calls[1].args[0]
    assert stdout_arg.res is None and stdout_arg.val == 1
    assert unknown_arg.res is None and unknown_arg.val == 0xffffffff
    assert ctx.prog.calls[2].args[0].val == 0xffffff9c


def test_failed_call_out_resources_are_not_cached(target, selector):
    node = node_of(
        ("pipe2", "[3, 4], O_CLOEXEC", -1),
        ("close", "4", 0),
    )
    ctx = gen_program(node, target, selector)

    assert len(ctx.return_cache) == 0
    assert ctx.prog.calls[1].args[0].res is None


def test_subtype_result_feeds_parent_kind(target, selector):
    node = node_of(
        ("socket", "AF_INET, SOCK_STREAM, IPPROTO_TCP", 3),
        ("close", "3", 0),
    )
    ctx = gen_program(node, target, selector)

    sock_call, close_call = ctx.prog.calls
    assert sock_call.meta.name == "socket$inet"
    assert close_call.args[0].res is sock_call.ret


def test_out_resources_in_memory_are_cached(target, selector):
    node = node_of(
        ("pipe", "[3, 4]", 0),
        ("write", '4, "x", 1', 1),
    )
    ctx = gen_program(node, target, selector)
    ctx.fill_out_memory()
    ctx.prog.validate()

    pipe_ptr = ctx.prog.calls[0].args[0]
    assert isinstance(pipe_ptr.res, GroupArg)
    wfd = pipe_ptr.res.inner[1]
    assert ctx.prog.calls[1].args[0].res is wfd
    assert b"<r0=>0xffffffff" in ctx.prog.serialize()


def test_pointer_coercion(target, selector):
    node = node_of(
        ("nanosleep", "{tv_sec=1, tv_nsec=500}, NULL", 0),
        ("read", "0, 0x7ffc1000, 16", 16),
        ("connect", "3, {sa_family=AF_INET, sin_port=htons(80), "
                    'sin_addr=inet_addr("127.0.0.1")}, 16', 0),
    )
    ctx = gen_program(node, target, selector)

    req, rem = ctx.prog.calls[0].args
    assert isinstance(req, PointerArg) and req.is_placeholder
    assert [a.val for a in req.res.inner] == [1, 500]
    assert rem.null

    read_buf = ctx.prog.calls[1].args[1]
    assert isinstance(read_buf.res, DataArg) and read_buf.res.size() == 16

    addr = ctx.prog.calls[2].args[1].res
    family, port, ip, pad = addr.inner
    assert family.val == 2 and port.val == 0x5000 and ip.val == 0x0100007f
    assert len(pad.inner) == 8
    assert ctx.prog.calls[2].args[2].val == 16


def test_out_buffer_size_is_capped_at_page_size(target, selector):
    node = node_of(("read", '0, "abc", 1048576', 3))
    ctx = gen_program(node, target, selector)
    assert ctx.prog.calls[0].args[1].res.size() == target.page_size


def test_return_cache_prefers_latest_compatible(target):
    fd = target.resources["fd"]
    sock = target.resources["sock"]
    cache = ReturnCache()
    first = ResultArg(ResourceType(fd), Dir.OUT)
    second = ResultArg(ResourceType(sock), Dir.OUT)
    cache.cache(3, first)
    cache.cache(3, second)

    assert cache.get(ResourceType(fd), 3) is second
    assert cache.get(ResourceType(target.resources["sock_unix"]), 3) is second
    assert cache.get(ResourceType(target.resources["fd_epoll"]), 3) is first
    assert cache.get(ResourceType(fd), 4) is None
    assert len(cache) == 2


def test_len_fields_follow_referents(target, selector):
    node = node_of(("writev", '1, [{iov_base="ab", iov_len=2}, {iov_base="cde", iov_len=9}], 2', 5))
    ctx = gen_program(node, target, selector)

    vec = ctx.prog.calls[0].args[1].res
    assert ctx.prog.calls[0].args[2].val == 2
    assert [iov.inner[1].val for iov in vec.inner] == [2, 3]
    assert all(isinstance(iov.inner[1], ConstArg) for iov in vec.inner)
