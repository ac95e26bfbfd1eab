#!/usr/bin/env python3
"""
Linux/amd64 Target - Syscall Descriptor Catalog
===============================================

Descriptions of the syscalls that strace traces of ordinary userspace
programs exercise most often, in the compact type expression syntax read by
``target_registry``:

- File system: open/openat/creat, read/write family, stat family, dirs
- Descriptors: dup family, pipe, fcntl variants, epoll, eventfd, timerfd
- Sockets: inet/inet6/unix socket variants, bind/connect/accept, send/recv
- Process and time: getpid family, nanosleep, clock_gettime

Variants use a ``$suffix`` and are told apart by their ``const`` arguments.
"""

from typing import Any, Dict

CONSTS: Dict[str, int] = {
    # open(2)
    "O_RDONLY": 0x0, "O_WRONLY": 0x1, "O_RDWR": 0x2, "O_CREAT": 0x40,
    "O_EXCL": 0x80, "O_NOCTTY": 0x100, "O_TRUNC": 0x200, "O_APPEND": 0x400,
    "O_NONBLOCK": 0x800, "O_DSYNC": 0x1000, "O_ASYNC": 0x2000, "O_DIRECT": 0x4000,
    "O_LARGEFILE": 0x8000, "O_DIRECTORY": 0x10000, "O_NOFOLLOW": 0x20000,
    "O_NOATIME": 0x40000, "O_CLOEXEC": 0x80000, "O_SYNC": 0x101000,
    "O_PATH": 0x200000, "O_TMPFILE": 0x410000,
    "S_IRUSR": 0x100, "S_IWUSR": 0x80, "S_IXUSR": 0x40, "S_IRGRP": 0x20,
    "S_IWGRP": 0x10, "S_IXGRP": 0x8, "S_IROTH": 0x4, "S_IWOTH": 0x2, "S_IXOTH": 0x1,
    "AT_FDCWD": -100, "AT_SYMLINK_NOFOLLOW": 0x100, "AT_REMOVEDIR": 0x200,
    "AT_SYMLINK_FOLLOW": 0x400, "AT_EMPTY_PATH": 0x1000,
    "SEEK_SET": 0, "SEEK_CUR": 1, "SEEK_END": 2, "SEEK_DATA": 3, "SEEK_HOLE": 4,
    # fcntl(2)
    "F_DUPFD": 0, "F_GETFD": 1, "F_SETFD": 2, "F_GETFL": 3, "F_SETFL": 4,
    "F_DUPFD_CLOEXEC": 0x406, "FD_CLOEXEC": 1,
    # sockets
    "AF_UNSPEC": 0, "AF_UNIX": 1, "AF_INET": 2, "AF_INET6": 10, "AF_NETLINK": 16,
    "SOCK_STREAM": 1, "SOCK_DGRAM": 2, "SOCK_RAW": 3, "SOCK_SEQPACKET": 5,
    "SOCK_NONBLOCK": 0x800, "SOCK_CLOEXEC": 0x80000,
    "IPPROTO_IP": 0, "IPPROTO_ICMP": 1, "IPPROTO_TCP": 6, "IPPROTO_UDP": 17,
    "SOL_SOCKET": 1, "SO_REUSEADDR": 2, "SO_TYPE": 3, "SO_ERROR": 4,
    "SO_BROADCAST": 6, "SO_SNDBUF": 7, "SO_RCVBUF": 8, "SO_KEEPALIVE": 9,
    "SO_REUSEPORT": 15,
    "MSG_OOB": 0x1, "MSG_PEEK": 0x2, "MSG_DONTWAIT": 0x40, "MSG_WAITALL": 0x100,
    "MSG_NOSIGNAL": 0x4000, "MSG_MORE": 0x8000,
    "SHUT_RD": 0, "SHUT_WR": 1, "SHUT_RDWR": 2,
    # memory
    "PROT_NONE": 0x0, "PROT_READ": 0x1, "PROT_WRITE": 0x2, "PROT_EXEC": 0x4,
    "MAP_SHARED": 0x1, "MAP_PRIVATE": 0x2, "MAP_FIXED": 0x10, "MAP_ANONYMOUS": 0x20,
    "MAP_NORESERVE": 0x4000, "MAP_POPULATE": 0x8000,
    # event descriptors
    "EPOLL_CLOEXEC": 0x80000, "EPOLL_CTL_ADD": 1, "EPOLL_CTL_DEL": 2, "EPOLL_CTL_MOD": 3,
    "EPOLLIN": 0x1, "EPOLLPRI": 0x2, "EPOLLOUT": 0x4, "EPOLLERR": 0x8,
    "EPOLLHUP": 0x10, "EPOLLRDHUP": 0x2000, "EPOLLONESHOT": 0x40000000,
    "EPOLLET": 0x80000000,
    "EFD_SEMAPHORE": 0x1, "EFD_NONBLOCK": 0x800, "EFD_CLOEXEC": 0x80000,
    "TFD_NONBLOCK": 0x800, "TFD_CLOEXEC": 0x80000,
    "IN_NONBLOCK": 0x800, "IN_CLOEXEC": 0x80000,
    "IN_ACCESS": 0x1, "IN_MODIFY": 0x2, "IN_ATTRIB": 0x4, "IN_CLOSE_WRITE": 0x8,
    "IN_OPEN": 0x20, "IN_MOVED_FROM": 0x40, "IN_MOVED_TO": 0x80,
    "IN_CREATE": 0x100, "IN_DELETE": 0x200,
    "MFD_CLOEXEC": 0x1, "MFD_ALLOW_SEALING": 0x2,
    "CLOCK_REALTIME": 0, "CLOCK_MONOTONIC": 1, "CLOCK_PROCESS_CPUTIME_ID": 2,
    "CLOCK_THREAD_CPUTIME_ID": 3, "CLOCK_MONOTONIC_RAW": 4, "CLOCK_BOOTTIME": 7,
}

FLAGS = {
    "open_flags": ["O_RDONLY", "O_WRONLY", "O_RDWR", "O_CREAT", "O_EXCL", "O_NOCTTY",
                   "O_TRUNC", "O_APPEND", "O_NONBLOCK", "O_DSYNC", "O_ASYNC", "O_DIRECT",
                   "O_LARGEFILE", "O_DIRECTORY", "O_NOFOLLOW", "O_NOATIME", "O_CLOEXEC",
                   "O_SYNC", "O_PATH", "O_TMPFILE"],
    "open_mode": ["S_IRUSR", "S_IWUSR", "S_IXUSR", "S_IRGRP", "S_IWGRP", "S_IXGRP",
                  "S_IROTH", "S_IWOTH", "S_IXOTH"],
    "at_flags": ["AT_SYMLINK_NOFOLLOW", "AT_REMOVEDIR", "AT_SYMLINK_FOLLOW", "AT_EMPTY_PATH"],
    "seek_whence": ["SEEK_SET", "SEEK_CUR", "SEEK_END", "SEEK_DATA", "SEEK_HOLE"],
    "dup_flags": ["O_CLOEXEC"],
    "pipe_flags": ["O_NONBLOCK", "O_CLOEXEC", "O_DIRECT"],
    "fcntl_flags": ["FD_CLOEXEC"],
    "fcntl_status": ["O_APPEND", "O_ASYNC", "O_DIRECT", "O_NOATIME", "O_NONBLOCK"],
    "socket_domain": ["AF_UNIX", "AF_INET", "AF_INET6", "AF_NETLINK"],
    "socket_type": ["SOCK_STREAM", "SOCK_DGRAM", "SOCK_RAW", "SOCK_SEQPACKET",
                    "SOCK_NONBLOCK", "SOCK_CLOEXEC"],
    "ip_proto": ["IPPROTO_IP", "IPPROTO_ICMP", "IPPROTO_TCP", "IPPROTO_UDP"],
    "sockopt_opt_sock_int": ["SO_REUSEADDR", "SO_TYPE", "SO_ERROR", "SO_BROADCAST",
                             "SO_SNDBUF", "SO_RCVBUF", "SO_KEEPALIVE", "SO_REUSEPORT"],
    "send_flags": ["MSG_OOB", "MSG_DONTWAIT", "MSG_NOSIGNAL", "MSG_MORE"],
    "recv_flags": ["MSG_OOB", "MSG_PEEK", "MSG_DONTWAIT", "MSG_WAITALL"],
    "accept_flags": ["SOCK_NONBLOCK", "SOCK_CLOEXEC"],
    "shutdown_how": ["SHUT_RD", "SHUT_WR", "SHUT_RDWR"],
    "mmap_prot": ["PROT_NONE", "PROT_READ", "PROT_WRITE", "PROT_EXEC"],
    "mmap_flags": ["MAP_SHARED", "MAP_PRIVATE", "MAP_FIXED", "MAP_ANONYMOUS",
                   "MAP_NORESERVE", "MAP_POPULATE"],
    "epoll_flags": ["EPOLL_CLOEXEC"],
    "epoll_ev": ["EPOLLIN", "EPOLLPRI", "EPOLLOUT", "EPOLLERR", "EPOLLHUP", "EPOLLRDHUP",
                 "EPOLLONESHOT", "EPOLLET"],
    "eventfd_flags": ["EFD_SEMAPHORE", "EFD_NONBLOCK", "EFD_CLOEXEC"],
    "timerfd_create_flags": ["TFD_NONBLOCK", "TFD_CLOEXEC"],
    "inotify_flags": ["IN_NONBLOCK", "IN_CLOEXEC"],
    "inotify_mask": ["IN_ACCESS", "IN_MODIFY", "IN_ATTRIB", "IN_CLOSE_WRITE", "IN_OPEN",
                     "IN_MOVED_FROM", "IN_MOVED_TO", "IN_CREATE", "IN_DELETE"],
    "memfd_flags": ["MFD_CLOEXEC", "MFD_ALLOW_SEALING"],
    "clock_id": ["CLOCK_REALTIME", "CLOCK_MONOTONIC", "CLOCK_PROCESS_CPUTIME_ID",
                 "CLOCK_THREAD_CPUTIME_ID", "CLOCK_MONOTONIC_RAW", "CLOCK_BOOTTIME"],
}

# The first special value of a resource is its default (invalid) value.
RESOURCES = [
    {"name": "fd", "special_values": [-1, 0, 1, 2]},
    {"name": "fd_dir", "parent": "fd", "special_values": [-1, "AT_FDCWD"]},
    {"name": "sock", "parent": "fd"},
    {"name": "sock_in", "parent": "sock"},
    {"name": "sock_in6", "parent": "sock"},
    {"name": "sock_unix", "parent": "sock"},
    {"name": "fd_epoll", "parent": "fd"},
    {"name": "fd_event", "parent": "fd"},
    {"name": "fd_timer", "parent": "fd"},
    {"name": "fd_inotify", "parent": "fd"},
    {"name": "inotifydesc", "special_values": [-1]},
    {"name": "pid", "special_values": [-1, 0]},
    {"name": "uid", "special_values": [-1, 0, 0xee00, 0xee01]},
    {"name": "gid", "special_values": [-1, 0, 0xee00, 0xee01]},
]

STRUCTS = {
    "timespec": [("tv_sec", "intptr"), ("tv_nsec", "intptr")],
    "iovec_in": [("iov_base", "buffer[in]"), ("iov_len", "len[iov_base, intptr]")],
    "iovec_out": [("iov_base", "buffer[out]"), ("iov_len", "len[iov_base, intptr]")],
    "pipefd": [("rfd", "fd", "out"), ("wfd", "fd", "out")],
    "unix_pair": [("fd0", "sock_unix", "out"), ("fd1", "sock_unix", "out")],
    "sockaddr_in": [("sa_family", "const[AF_INET, int16]"), ("sin_port", "int16"),
                    ("sin_addr", "int32"), ("pad", "array[int8, 8]")],
    "sockaddr_in6": [("sa_family", "const[AF_INET6, int16]"), ("sin6_port", "int16"),
                     ("sin6_flowinfo", "int32"), ("sin6_addr", "array[int8, 16]"),
                     ("sin6_scope_id", "int32")],
    "sockaddr_un": [("sa_family", "const[AF_UNIX, int16]"), ("sun_path", "filename")],
    "epoll_event": [("events", "flags[epoll_ev, int32]"), ("data", "int64")],
}

FD_IN = ("fd", "fd")
FILE_IN = ("file", "ptr[in, filename]")

SYSCALLS = [
    ("open", [FILE_IN, ("flags", "flags[open_flags, int32]"),
              ("mode", "flags[open_mode, int32]")], "fd"),
    ("openat", [("fd", "fd_dir"), FILE_IN, ("flags", "flags[open_flags, int32]"),
                ("mode", "flags[open_mode, int32]")], "fd"),
    ("creat", [FILE_IN, ("mode", "flags[open_mode, int32]")], "fd"),
    ("close", [FD_IN], None),
    ("read", [FD_IN, ("buf", "buffer[out]"), ("count", "len[buf, intptr]")], None),
    ("write", [FD_IN, ("buf", "buffer[in]"), ("count", "len[buf, intptr]")], None),
    ("pread64", [FD_IN, ("buf", "buffer[out]"), ("count", "len[buf, intptr]"),
                 ("pos", "intptr")], None),
    ("pwrite64", [FD_IN, ("buf", "buffer[in]"), ("count", "len[buf, intptr]"),
                  ("pos", "intptr")], None),
    ("readv", [FD_IN, ("vec", "ptr[in, array[iovec_out]]"), ("vlen", "len[vec, intptr]")], None),
    ("writev", [FD_IN, ("vec", "ptr[in, array[iovec_in]]"), ("vlen", "len[vec, intptr]")], None),
    ("lseek", [FD_IN, ("offset", "intptr"), ("whence", "flags[seek_whence, int32]")], None),
    ("dup", [("oldfd", "fd")], "fd"),
    ("dup2", [("oldfd", "fd"), ("newfd", "fd")], "fd"),
    ("dup3", [("oldfd", "fd"), ("newfd", "fd"), ("flags", "flags[dup_flags, int32]")], "fd"),
    ("pipe", [("pipefd", "ptr[out, pipefd]")], None),
    ("pipe2", [("pipefd", "ptr[out, pipefd]"), ("flags", "flags[pipe_flags, int32]")], None),
    ("fcntl$dupfd", [FD_IN, ("cmd", "const[F_DUPFD, int32]"), ("arg", "fd")], "fd"),
    ("fcntl$dupfd_cloexec", [FD_IN, ("cmd", "const[F_DUPFD_CLOEXEC, int32]"), ("arg", "fd")], "fd"),
    ("fcntl$getfd", [FD_IN, ("cmd", "const[F_GETFD, int32]")], None),
    ("fcntl$setfd", [FD_IN, ("cmd", "const[F_SETFD, int32]"),
                     ("flags", "flags[fcntl_flags, int32]")], None),
    ("fcntl$getflags", [FD_IN, ("cmd", "const[F_GETFL, int32]")], None),
    ("fcntl$setflags", [FD_IN, ("cmd", "const[F_SETFL, int32]"),
                        ("flags", "flags[fcntl_status, int32]")], None),
    ("ioctl", [FD_IN, ("cmd", "int32"), ("arg", "intptr")], None),
    ("fstat", [FD_IN, ("statbuf", "buffer[out]")], None),
    ("stat", [FILE_IN, ("statbuf", "buffer[out]")], None),
    ("lstat", [FILE_IN, ("statbuf", "buffer[out]")], None),
    ("newfstatat", [("dirfd", "fd_dir"), FILE_IN, ("statbuf", "buffer[out]"),
                    ("flags", "flags[at_flags, int32]")], None),
    ("access", [FILE_IN, ("mode", "int32")], None),
    ("mkdir", [("path", "ptr[in, filename]"), ("mode", "flags[open_mode, int32]")], None),
    ("mkdirat", [("fd", "fd_dir"), ("path", "ptr[in, filename]"),
                 ("mode", "flags[open_mode, int32]")], None),
    ("rmdir", [("path", "ptr[in, filename]")], None),
    ("unlink", [("path", "ptr[in, filename]")], None),
    ("unlinkat", [("fd", "fd_dir"), ("path", "ptr[in, filename]"),
                  ("flags", "flags[at_flags, int32]")], None),
    ("rename", [("old", "ptr[in, filename]"), ("new", "ptr[in, filename]")], None),
    ("chdir", [("dir", "ptr[in, filename]")], None),
    ("fchdir", [("fd", "fd_dir")], None),
    ("getcwd", [("buf", "buffer[out]"), ("size", "len[buf, intptr]")], None),
    ("getdents64", [("fd", "fd_dir"), ("ent", "buffer[out]"), ("count", "len[ent, intptr]")], None),
    ("ftruncate", [FD_IN, ("len", "intptr")], None),
    ("fsync", [FD_IN], None),
    ("socket", [("domain", "flags[socket_domain, int32]"), ("type", "flags[socket_type, int32]"),
                ("proto", "int32")], "sock"),
    ("socket$inet", [("domain", "const[AF_INET, int32]"), ("type", "flags[socket_type, int32]"),
                     ("proto", "flags[ip_proto, int32]")], "sock_in"),
    ("socket$inet6", [("domain", "const[AF_INET6, int32]"), ("type", "flags[socket_type, int32]"),
                      ("proto", "flags[ip_proto, int32]")], "sock_in6"),
    ("socket$unix", [("domain", "const[AF_UNIX, int32]"), ("type", "flags[socket_type, int32]"),
                     ("proto", "const[0, int32]")], "sock_unix"),
    ("socketpair$unix", [("domain", "const[AF_UNIX, int32]"), ("type", "flags[socket_type, int32]"),
                         ("proto", "const[0, int32]"), ("fds", "ptr[out, unix_pair]")], None),
    ("bind$inet", [("fd", "sock_in"), ("addr", "ptr[in, sockaddr_in]"),
                   ("addrlen", "len[addr, int32]")], None),
    ("connect$inet", [("fd", "sock_in"), ("addr", "ptr[in, sockaddr_in]"),
                      ("addrlen", "len[addr, int32]")], None),
    ("bind$inet6", [("fd", "sock_in6"), ("addr", "ptr[in, sockaddr_in6]"),
                    ("addrlen", "len[addr, int32]")], None),
    ("connect$inet6", [("fd", "sock_in6"), ("addr", "ptr[in, sockaddr_in6]"),
                       ("addrlen", "len[addr, int32]")], None),
    ("bind$unix", [("fd", "sock_unix"), ("addr", "ptr[in, sockaddr_un]"),
                   ("addrlen", "len[addr, int32]")], None),
    ("connect$unix", [("fd", "sock_unix"), ("addr", "ptr[in, sockaddr_un]"),
                      ("addrlen", "len[addr, int32]")], None),
    ("listen", [("fd", "sock"), ("backlog", "int32")], None),
    ("accept", [("fd", "sock"), ("peer", "buffer[out]"), ("peerlen", "ptr[inout, int32]")], "sock"),
    ("accept4", [("fd", "sock"), ("peer", "buffer[out]"), ("peerlen", "ptr[inout, int32]"),
                 ("flags", "flags[accept_flags, int32]")], "sock"),
    ("sendto", [("fd", "sock"), ("buf", "buffer[in]"), ("len", "len[buf, intptr]"),
                ("f", "flags[send_flags, int32]"), ("addr", "buffer[in]"),
                ("addrlen", "len[addr, int32]")], None),
    ("recvfrom", [("fd", "sock"), ("buf", "buffer[out]"), ("len", "len[buf, intptr]"),
                  ("f", "flags[recv_flags, int32]"), ("addr", "buffer[out]"),
                  ("addrlen", "ptr[inout, int32]")], None),
    ("shutdown", [("fd", "sock"), ("how", "flags[shutdown_how, int32]")], None),
    ("setsockopt$sock_int", [("fd", "sock"), ("level", "const[SOL_SOCKET, int32]"),
                             ("optname", "flags[sockopt_opt_sock_int, int32]"),
                             ("optval", "ptr[in, int32]"), ("optlen", "len[optval, int32]")], None),
    ("getsockopt$sock_int", [("fd", "sock"), ("level", "const[SOL_SOCKET, int32]"),
                             ("optname", "flags[sockopt_opt_sock_int, int32]"),
                             ("optval", "ptr[out, int32]"), ("optlen", "ptr[inout, int32]")], None),
    ("mmap", [("addr", "intptr"), ("len", "intptr"), ("prot", "flags[mmap_prot, int32]"),
              ("flags", "flags[mmap_flags, int32]"), FD_IN, ("offset", "intptr")], None),
    ("munmap", [("addr", "intptr"), ("len", "intptr")], None),
    ("nanosleep", [("req", "ptr[in, timespec]"), ("rem", "ptr[out, timespec]")], None),
    ("clock_gettime", [("id", "flags[clock_id, int32]"), ("tp", "ptr[out, timespec]")], None),
    ("epoll_create1", [("flags", "flags[epoll_flags, int32]")], "fd_epoll"),
    ("epoll_ctl$EPOLL_CTL_ADD", [("epfd", "fd_epoll"), ("op", "const[EPOLL_CTL_ADD, int32]"),
                                 FD_IN, ("ev", "ptr[in, epoll_event]")], None),
    ("epoll_ctl$EPOLL_CTL_MOD", [("epfd", "fd_epoll"), ("op", "const[EPOLL_CTL_MOD, int32]"),
                                 FD_IN, ("ev", "ptr[in, epoll_event]")], None),
    ("epoll_ctl$EPOLL_CTL_DEL", [("epfd", "fd_epoll"), ("op", "const[EPOLL_CTL_DEL, int32]"),
                                 FD_IN, ("ev", "ptr[in, epoll_event]")], None),
    ("epoll_wait", [("epfd", "fd_epoll"), ("events", "buffer[out]"), ("maxevents", "int32"),
                    ("timeout", "int32")], None),
    ("eventfd2", [("initval", "int32"), ("flags", "flags[eventfd_flags, int32]")], "fd_event"),
    ("timerfd_create", [("clockid", "flags[clock_id, int32]"),
                        ("flags", "flags[timerfd_create_flags, int32]")], "fd_timer"),
    ("inotify_init1", [("flags", "flags[inotify_flags, int32]")], "fd_inotify"),
    ("inotify_add_watch", [("fd", "fd_inotify"), FILE_IN,
                           ("mask", "flags[inotify_mask, int32]")], "inotifydesc"),
    ("inotify_rm_watch", [("fd", "fd_inotify"), ("wd", "inotifydesc")], None),
    ("memfd_create", [("name", "ptr[in, string]"), ("flags", "flags[memfd_flags, int32]")], "fd"),
    ("getpid", [], "pid"),
    ("getppid", [], "pid"),
    ("gettid", [], "pid"),
    ("kill", [("pid", "pid"), ("sig", "int32")], None),
    ("getuid", [], "uid"),
    ("geteuid", [], "uid"),
    ("getgid", [], "gid"),
    ("getegid", [], "gid"),
    ("setuid", [("uid", "uid")], None),
    ("setgid", [("gid", "gid")], None),
    ("uname", [("buf", "buffer[out]")], None),
]


def get_target_spec() -> Dict[str, Any]:
    """Return the descriptor catalog consumed by ``target_registry.build_target``."""
    return {
        "os": "linux",
        "arch": "amd64",
        "page_size": 4 << 10,
        "num_pages": 4 << 10,
        "data_offset": 0x20000000,
        "consts": CONSTS,
        "flags": FLAGS,
        "resources": RESOURCES,
        "structs": STRUCTS,
        "syscalls": SYSCALLS,
    }
