#!/usr/bin/env python3

import os
import sys
import stat
import pwd
import grp
import logging
from dataclasses import dataclass, field
from io import StringIO

import pathspec
from fastapi import FastAPI, Query
from fastapi.responses import PlainTextResponse

logger = logging.getLogger("dirtree")

MAX_ROOTS = 64  # maximum number of root paths per run

NAME_WIDTH = 55
OWNER_WIDTH = 20
SIZE_WIDTH = 10

DIRECTORY = "dir"
REGULAR_FILE = "file"
SYMLINK = "link"
CHAR_DEVICE = "chr"
BLOCK_DEVICE = "blk"
FIFO = "fifo"
SOCKET = "sock"
UNKNOWN = "unknown"

TYPE_TAGS = {
    DIRECTORY: "d",
    REGULAR_FILE: "",
    SYMLINK: "l",
    CHAR_DEVICE: "c",
    BLOCK_DEVICE: "b",
    FIFO: "f",
    SOCKET: "s",
    UNKNOWN: "?",
}

PERMISSION_BITS = [
    (stat.S_IRUSR, "r"),
    (stat.S_IWUSR, "w"),
    (stat.S_IXUSR, "x"),
    (stat.S_IRGRP, "r"),
    (stat.S_IWGRP, "w"),
    (stat.S_IXGRP, "x"),
    (stat.S_IROTH, "r"),
    (stat.S_IWOTH, "w"),
    (stat.S_IXOTH, "x"),
]

HEADER = (
    f"{'Name':<{NAME_WIDTH}}{'User:Group':>{OWNER_WIDTH}}"
    f"{'Size':>{SIZE_WIDTH}} {'Perms':<9} Type"
)
SEPARATOR = "-" * len(HEADER)

USAGE = """\
Usage: {prog} [-d] [-s] [-v] [-g] [-h] [path...]
Gather information about directory trees. If no path is given, the current directory
is analyzed.

Options:
 -d        print directories only
 -s        print summary of directories (total number of files, total file size, etc)
 -v        print detailed information for each file. Turns on tree view.
 -g        skip hidden entries and entries matched by the root's .gitignore
 -h        print this help
 path...   list of space-separated paths (max {max_roots}). Default is the current directory."""


class UsageError(Exception):
    """Raised for malformed command lines."""


def classify(mode: int) -> str:
    if stat.S_ISDIR(mode):
        return DIRECTORY
    if stat.S_ISREG(mode):
        return REGULAR_FILE
    if stat.S_ISLNK(mode):
        return SYMLINK
    if stat.S_ISCHR(mode):
        return CHAR_DEVICE
    if stat.S_ISBLK(mode):
        return BLOCK_DEVICE
    if stat.S_ISFIFO(mode):
        return FIFO
    if stat.S_ISSOCK(mode):
        return SOCKET
    return UNKNOWN


def get_permission_string(mode: int) -> str:
    """
    Render the user/group/other read-write-execute bits of 'mode' as a
    9-character string, e.g. 'rwxr-x---'. Special bits are not shown.
    """
    return "".join(letter if mode & bit else "-" for bit, letter in PERMISSION_BITS)


def get_owner_name(uid: int) -> str | None:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return None


def get_group_name(gid: int) -> str | None:
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return None


def describe_error(exc: OSError) -> str:
    return exc.strerror or str(exc)


class Entry:
    def __init__(
        self,
        name: str,
        path: str,
        kind: str = UNKNOWN,
        mode: int = 0,
        size: int = 0,
        uid: int = 0,
        gid: int = 0,
        error: OSError | None = None,
    ):
        self.name = name
        self.path = path
        self.kind = kind
        self.mode = mode
        self.size = size
        self.uid = uid
        self.gid = gid
        self.error = error

    @classmethod
    def from_path(cls, directory: str, name: str) -> "Entry":
        """Build an entry from a single non-following stat of directory/name."""
        path = os.path.join(directory, name)
        try:
            st = os.lstat(path)
        except OSError as exc:
            logger.debug("lstat failed for %s: %s", path, exc)
            return cls(name, path, error=exc)
        return cls(
            name,
            path,
            kind=classify(st.st_mode),
            mode=st.st_mode,
            size=st.st_size,
            uid=st.st_uid,
            gid=st.st_gid,
        )

    @property
    def is_dir(self) -> bool:
        return self.kind == DIRECTORY


@dataclass(frozen=True)
class Summary:
    directories: int = 0
    files: int = 0
    links: int = 0
    fifos: int = 0
    sockets: int = 0
    size: int = 0

    @classmethod
    def of(cls, entry: Entry) -> "Summary":
        """Counts contributed by one directly listed entry (not its subtree)."""
        if entry.kind == DIRECTORY:
            return cls(directories=1)
        if entry.kind == REGULAR_FILE:
            return cls(files=1, size=entry.size)
        if entry.kind == SYMLINK:
            return cls(links=1)
        if entry.kind == FIFO:
            return cls(fifos=1)
        if entry.kind == SOCKET:
            return cls(sockets=1)
        return cls()


def merge(a: Summary, b: Summary) -> Summary:
    return Summary(
        directories=a.directories + b.directories,
        files=a.files + b.files,
        links=a.links + b.links,
        fifos=a.fifos + b.fifos,
        sockets=a.sockets + b.sockets,
        size=a.size + b.size,
    )


@dataclass(frozen=True)
class TraversalContext:
    dir_only: bool = False
    summary: bool = False
    verbose: bool = False
    ignore_hidden: bool = False
    ignore_spec: pathspec.PathSpec | None = None
    ignore_root: str | None = None


@dataclass
class Options:
    dir_only: bool = False
    summary: bool = False
    verbose: bool = False
    use_gitignore: bool = False
    show_help: bool = False
    roots: list[str] = field(default_factory=list)


def load_gitignore_spec(root: str) -> pathspec.PathSpec | None:
    gitignore_path = os.path.join(root, ".gitignore")
    if not os.path.isfile(gitignore_path):
        return None
    with open(gitignore_path, "r", encoding="utf-8") as f:
        lines = f.read().splitlines()
    return pathspec.GitIgnoreSpec.from_lines(lines)


def is_ignored(context: TraversalContext, entry: Entry) -> bool:
    if context.ignore_hidden and entry.name.startswith("."):
        return True
    if context.ignore_spec is None:
        return False
    rel_path = os.path.relpath(entry.path, start=context.ignore_root or ".")
    rel_path = rel_path.replace("\\", "/")
    if entry.is_dir:
        rel_path += "/"
    return context.ignore_spec.match_file(rel_path)


def sort_key(entry: Entry) -> tuple[bool, bytes]:
    return (not entry.is_dir, os.fsencode(entry.name))


def sort_entries(entries: list[Entry]) -> list[Entry]:
    """
    Directories first, then everything else; each group ordered by the raw
    bytes of the name (no locale collation).
    """
    return sorted(entries, key=sort_key)


def read_entries(path: str) -> list[Entry]:
    """
    List and lstat every child of 'path'. Raises OSError if the directory
    cannot be opened or read.
    """
    with os.scandir(path) as it:
        names = [dirent.name for dirent in it]
    return [Entry.from_path(path, name) for name in names]


def format_entry(entry: Entry, depth: int, verbose: bool) -> str:
    """
    Format a single output line for 'entry', indented two spaces per level.
    In verbose mode the name is followed by owner:group, size (regular files
    only), permissions and the type tag, in fixed-width columns.
    """
    label = "  " * depth + entry.name
    if not verbose:
        return label

    if len(label) > NAME_WIDTH:
        label = label[: NAME_WIDTH - 3] + "..."
    owner = get_owner_name(entry.uid) or str(entry.uid)
    group = get_group_name(entry.gid) or str(entry.gid)
    size = str(entry.size) if entry.kind == REGULAR_FILE else ""
    perms = get_permission_string(entry.mode)
    tag = TYPE_TAGS.get(entry.kind, "?")
    line = (
        f"{label:<{NAME_WIDTH}}{owner + ':' + group:>{OWNER_WIDTH}}"
        f"{size:>{SIZE_WIDTH}} {perms} {tag}"
    )
    return line.rstrip()


def pluralize(count: int, singular: str, plural: str) -> str:
    return f"{count} {singular if count == 1 else plural}"


def format_summary_line(summary: Summary, dir_only: bool) -> str:
    if dir_only:
        return pluralize(summary.directories, "directory", "directories")
    return (
        f"{pluralize(summary.files, 'file', 'files')}, "
        f"{pluralize(summary.directories, 'directory', 'directories')}, "
        f"{pluralize(summary.links, 'link', 'links')}, "
        f"{pluralize(summary.fifos, 'pipe', 'pipes')}, "
        f"and {pluralize(summary.sockets, 'socket', 'sockets')}"
    )


def write_header(out) -> None:
    print(HEADER, file=out)
    print(SEPARATOR, file=out)


def write_footer(summary: Summary, context: TraversalContext, out) -> None:
    print(SEPARATOR, file=out)
    print(format_summary_line(summary, context.dir_only), file=out)
    if context.verbose and not context.dir_only:
        print(f"{pluralize(summary.size, 'byte', 'bytes')} total", file=out)


def write_grand_total(
    total: Summary, root_count: int, context: TraversalContext, out
) -> None:
    print(f"Analyzed {root_count} directories:", file=out)
    if context.dir_only:
        print(f"  total # of directories:  {total.directories:16d}", file=out)
        return
    print(f"  total # of files:        {total.files:16d}", file=out)
    print(f"  total # of directories:  {total.directories:16d}", file=out)
    print(f"  total # of links:        {total.links:16d}", file=out)
    print(f"  total # of pipes:        {total.fifos:16d}", file=out)
    print(f"  total # of sockets:      {total.sockets:16d}", file=out)
    if context.verbose:
        print(f"  total file size:         {total.size:16d}", file=out)


class DirectoryFrame:
    """One directory being walked: its remaining sorted children and its own tally."""

    def __init__(self, path: str, depth: int, entries: list[Entry], failed: bool):
        self.path = path
        self.depth = depth
        self.entries = iter(sort_entries(entries))
        self.summary = Summary()
        self.failed = failed


def open_frame(path: str, depth: int, out) -> DirectoryFrame:
    try:
        entries = read_entries(path)
    except OSError as exc:
        logger.debug("cannot read directory %s: %s", path, exc)
        print(f"{'  ' * depth}ERROR: {describe_error(exc)}", file=out)
        return DirectoryFrame(path, depth, [], True)
    return DirectoryFrame(path, depth, entries, False)


def traverse(
    path: str,
    depth: int = 0,
    context: TraversalContext | None = None,
    out=None,
) -> tuple[Summary, bool]:
    """
    Print the tree below 'path' and return its Summary.

    Every directly listed entry is counted by its own directory exactly once.
    When a subdirectory is finished its Summary is merged into its parent's.
    The walk keeps an explicit stack of open directories, so nesting depth is
    not bounded by the interpreter's recursion limit. The second element of
    the result is True when any directory or entry in the subtree could not
    be read. Failures are reported inline and never abort the walk.
    """
    if context is None:
        context = TraversalContext()
    if out is None:
        out = sys.stdout

    if depth == 0:
        if context.summary:
            write_header(out)
        print(path, file=out)

    stack = [open_frame(path, depth, out)]
    while True:
        frame = stack[-1]
        entry = next(frame.entries, None)

        if entry is None:
            stack.pop()
            if not stack:
                break
            parent = stack[-1]
            parent.summary = merge(parent.summary, frame.summary)
            parent.failed = parent.failed or frame.failed
            continue

        indent = "  " * frame.depth
        if is_ignored(context, entry):
            continue
        if entry.error is not None:
            print(f"{indent}ERROR: {entry.name}: {describe_error(entry.error)}", file=out)
            frame.failed = True
            continue
        if context.dir_only and not entry.is_dir:
            continue

        print(format_entry(entry, frame.depth, context.verbose), file=out)
        frame.summary = merge(frame.summary, Summary.of(entry))

        if entry.is_dir:
            stack.append(open_frame(entry.path, frame.depth + 1, out))

    if depth == 0 and context.summary:
        write_footer(frame.summary, context, out)

    return frame.summary, frame.failed


def build_context(options: Options, root: str) -> TraversalContext:
    ignore_spec = None
    if options.use_gitignore:
        ignore_spec = load_gitignore_spec(root)
    return TraversalContext(
        dir_only=options.dir_only,
        summary=options.summary,
        verbose=options.verbose,
        ignore_hidden=options.use_gitignore,
        ignore_spec=ignore_spec,
        ignore_root=root,
    )


def run(roots: list[str], options: Options, out=None) -> tuple[Summary, bool]:
    """Traverse every root, then print the grand total when there are several."""
    if out is None:
        out = sys.stdout

    total = Summary()
    failed = False
    for root in roots:
        root_summary, root_failed = traverse(root, 0, build_context(options, root), out)
        total = merge(total, root_summary)
        failed = failed or root_failed

    if options.summary and len(roots) > 1:
        report_context = TraversalContext(
            dir_only=options.dir_only, verbose=options.verbose
        )
        write_grand_total(total, len(roots), report_context, out)
    return total, failed


def parse_args(argv: list[str]) -> Options:
    options = Options()
    for arg in argv:
        if arg.startswith("-"):
            if arg == "-d":
                options.dir_only = True
            elif arg == "-s":
                options.summary = True
            elif arg == "-v":
                options.verbose = True
            elif arg == "-g":
                options.use_gitignore = True
            elif arg == "-h":
                options.show_help = True
            else:
                raise UsageError(f"Unrecognized option '{arg}'.")
        elif len(options.roots) < MAX_ROOTS:
            options.roots.append(arg)
        else:
            print(
                f"Warning: maximum number of directories exceeded, ignoring '{arg}'.",
                file=sys.stderr,
            )

    if not options.roots:
        options.roots.append(".")
    return options


def usage(prog: str) -> str:
    return USAGE.format(prog=os.path.basename(prog), max_roots=MAX_ROOTS)


def dirtree(
    paths: list[str],
    dir_only: bool = False,
    summary: bool = False,
    verbose: bool = False,
    use_gitignore: bool = False,
) -> str:
    options = Options(
        dir_only=dir_only,
        summary=summary,
        verbose=verbose,
        use_gitignore=use_gitignore,
        roots=list(paths) or ["."],
    )
    buffer = StringIO()
    run(options.roots, options, buffer)
    return buffer.getvalue().rstrip("\n")


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv
    prog, args = argv[0] if argv else "dirtree", argv[1:]

    try:
        options = parse_args(args)
    except UsageError as exc:
        print(exc, file=sys.stderr)
        print(file=sys.stderr)
        print(usage(prog), file=sys.stderr)
        return 1

    if options.show_help:
        print(usage(prog))
        return 0

    run(options.roots, options)
    return 0


app = FastAPI()


@app.get("/dirtree", response_class=PlainTextResponse)
def dirtree_endpoint(
    path: list[str] = Query(default=["."]),
    dir_only: bool = False,
    summary: bool = False,
    verbose: bool = False,
    use_gitignore: bool = False,
):
    for extra in path[MAX_ROOTS:]:
        logger.warning(
            "maximum number of directories exceeded, ignoring '%s'.", extra
        )
    report = dirtree(path[:MAX_ROOTS], dir_only, summary, verbose, use_gitignore)
    # names that are not valid UTF-8 go back out as their original bytes
    return PlainTextResponse(report.encode("utf-8", "surrogateescape"))


if __name__ == "__main__":
    sys.exit(main())
