from call_selector import DefaultCallSelector
from trace_parser import TraceCall, parse_args


def make_call(name, args, ret=0):
    return TraceCall(pid=1, name=name, args=parse_args(args), ret=ret)


def test_variant_chosen_by_const_argument(selector):
    selection = selector.select(make_call("socket", "AF_INET, SOCK_STREAM, IPPROTO_TCP", 3))
    assert selection.syscall.name == "socket$inet"

    selection = selector.select(make_call("fcntl", "3, F_GETFL", 2))
    assert selection.syscall.name == "fcntl$getflags"


def test_unmatched_variant_falls_back_to_base(selector):
    selection = selector.select(make_call("socket", "AF_NETLINK, SOCK_RAW, 0", 3))
    assert selection.syscall.name == "socket"
    assert selection.arg_map == (0, 1, 2)


def test_variant_chosen_by_struct_pointee(selector):
    call = make_call("connect", '3, {sa_family=AF_UNIX, sun_path="/tmp/sock"}, 12')
    assert selector.select(call).syscall.name == "connect$unix"

    call = make_call("bind", "3, {sa_family=AF_INET, sin_port=htons(80), "
                             'sin_addr=inet_addr("127.0.0.1")}, 16')
    assert selector.select(call).syscall.name == "bind$inet"


def test_alias_maps_arguments(selector):
    selection = selector.select(make_call("send", '3, "hi", 2, 0', 2))
    assert selection.syscall.name == "sendto"
    assert selection.arg_map == (0, 1, 2, 3, None, None)


def test_unsupported_and_unknown_calls(target, selector):
    assert selector.select(make_call("exit_group", "0")) is None
    assert selector.select(make_call("frobnicate", "1, 2")) is None
    assert DefaultCallSelector(target).select(make_call("getpid", "", 7)) is not None
