"""
fangrep: a concurrent recursive grep for the terminal.

Walks a directory tree (or reads piped standard input), scans every regular
file line by line and prints the matching lines, windowed and highlighted,
grouped per file. Without a content pattern it searches file paths instead.

Run as `python fangrep.py PATTERN` or through the `fangrep` console script.
"""

import argparse
import errno
import json
import logging
import os
import re
import stat
import sys
import threading
import time
from dataclasses import dataclass, field

from rich.color import ColorSystem
from rich.style import Style

__all__ = ["main", "__version__"]
__version__ = "0.1.0"

logger = logging.getLogger("fangrep")

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

DEFAULT_MAX_OPEN_FILES = 1024
DEFAULT_MAX_WIDTH = 80
DEFAULT_LARGE_FILE_MB = 5
DEFAULT_IGNORE_DIRS = (".git", "node_modules")
CONTEXT_MARGIN = 10
RETRY_DELAY = 0.1
FD_RESERVE = 32
STDIN_LABEL = "STDIN"

_LEADING_SPACE = re.compile(rb"^\s+")
_WHITESPACE = re.compile(rb"\s+")
_EXHAUSTED = (errno.EMFILE, errno.ENFILE)


# ---------- Errors ----------
class FangrepError(Exception):
    """Base class for fatal errors."""


class ConfigError(FangrepError):
    """Invalid configuration detected at startup."""


class WalkError(FangrepError):
    """The directory walk could not continue."""


# ---------- Settings ----------
def settings_path() -> str:
    override = os.getenv("FANGREP_SETTINGS")
    if override:
        return override
    base = os.getenv("APPDATA") or os.path.expanduser("~")
    return os.path.join(base, "Fangrep", "settings.json")


def load_settings(path: str | None = None) -> dict:
    path = path or settings_path()
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
            return data if isinstance(data, dict) else {}
    except (OSError, ValueError):
        return {}


def configure_logging(log_file: str | None = None) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    formatter = logging.Formatter(LOG_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False


# ---------- Highlighting ----------
MATCH_STYLE = Style(color="blue", bold=True)
PATH_STYLE = Style(color="green")
LINE_NUMBER_STYLE = Style(color="bright_black")


class Highlighter:
    """Renders styled spans as ANSI escapes, or as plain text when disabled."""

    def __init__(self, enabled: bool):
        self.enabled = enabled
        self._color_system = ColorSystem.STANDARD if enabled else None

    def render(self, text: str, style: Style) -> str:
        if not self.enabled:
            return text
        return style.render(text, color_system=self._color_system)

    def render_bytes(self, data: bytes, style: Style) -> bytes:
        if not self.enabled or not data:
            return data
        # surrogateescape keeps slices that cut a multi-byte sequence intact
        text = data.decode("utf-8", "surrogateescape")
        return self.render(text, style).encode("utf-8", "surrogateescape")

    def match(self, data: bytes) -> bytes:
        return self.render_bytes(data, MATCH_STYLE)

    def path(self, text: str) -> str:
        return self.render(text, PATH_STYLE)

    def line_number(self, num: int) -> str:
        return self.render(str(num), LINE_NUMBER_STYLE)


def color_enabled(force_color: bool, force_no_color: bool, setting: str = "auto", stream=None) -> bool:
    if force_color:
        return True
    if force_no_color or setting == "never":
        return False
    if setting == "always":
        return True
    stream = stream if stream is not None else sys.stdout
    try:
        return stream.isatty()
    except (AttributeError, ValueError):
        return False


# ---------- Matching ----------
@dataclass(frozen=True)
class Matcher:
    content: re.Pattern | None = None
    path: re.Pattern | None = None

    def matches_path(self, path: str) -> bool:
        return self.path is None or self.path.search(path) is not None

    def find_path_spans(self, path: str) -> list[tuple[int, int]]:
        if self.path is None:
            return []
        return [m.span() for m in self.path.finditer(path)]

    def line_matches(self, line: bytes) -> bool:
        return self.content is not None and self.content.search(line) is not None

    def find_line_spans(self, line: bytes) -> list[tuple[int, int]]:
        if self.content is None:
            return []
        return [m.span() for m in self.content.finditer(line)]


def compile_matcher(content_pattern: str | None, path_pattern: str | None) -> Matcher:
    """Compile both patterns case-insensitively; content as bytes, paths as text."""
    content = path = None
    try:
        if content_pattern is not None:
            content = re.compile(os.fsencode(content_pattern), re.IGNORECASE)
        if path_pattern:
            path = re.compile(path_pattern, re.IGNORECASE)
    except re.error as e:
        raise ConfigError(f"invalid regex {e}") from e
    return Matcher(content=content, path=path)


def ignore_regex(names) -> re.Pattern:
    return re.compile("(" + "|".join(re.escape(n) for n in names) + ")$")


@dataclass(frozen=True)
class SearchSpec:
    matcher: Matcher
    root_path: str = "."
    include_large_files: bool = False
    max_open_files: int = DEFAULT_MAX_OPEN_FILES
    max_display_width: int = DEFAULT_MAX_WIDTH
    large_file_limit: int = DEFAULT_LARGE_FILE_MB * 1024 * 1024
    ignore: re.Pattern = field(default_factory=lambda: ignore_regex(DEFAULT_IGNORE_DIRS))


# ---------- Line windowing ----------
@dataclass(frozen=True)
class DisplaySegment:
    line_number: int
    first: bool
    text: bytes
    highlight: tuple[int, int]
    newline: bool


def normalize_line(line: bytes) -> bytes:
    return _WHITESPACE.sub(b" ", _LEADING_SPACE.sub(b"", line))


def window_line(line: bytes, spans, line_number: int, width: int = DEFAULT_MAX_WIDTH,
                margin: int = CONTEXT_MARGIN) -> list[DisplaySegment]:
    """
    Cut a line into display segments, one per match span.

    Segments on one printed row are contiguous and the row stays within
    `width` bytes unless a single match is longer. A span starting past the
    current row's budget opens a fresh row `margin` bytes before the match.
    """
    segments: list[DisplaySegment] = []
    size = len(line)
    row_start = cursor = 0
    for i, (left, right) in enumerate(spans):
        if left > row_start + width:
            cursor = max(left - margin, cursor)
            row_start = cursor
        edge = min(max(row_start + width, right), size)
        nxt = spans[i + 1][0] if i + 1 < len(spans) else None
        if nxt is not None and nxt < edge:
            edge = nxt
        last = nxt is None
        segments.append(DisplaySegment(
            line_number=line_number,
            first=i == 0,
            text=line[cursor:edge],
            highlight=(left - cursor, right - cursor),
            newline=last or nxt > row_start + width,
        ))
        cursor = edge
    return segments


def render_segment(seg: DisplaySegment, hl: Highlighter) -> bytes:
    left, right = seg.highlight
    out = seg.text[:left] + hl.match(seg.text[left:right]) + seg.text[right:]
    if seg.first:
        out = f"{hl.line_number(seg.line_number)}:\t".encode() + out
    if seg.newline:
        out += b"\n"
    return out


# ---------- Scanning ----------
@dataclass
class FileResult:
    path: str
    segments: list[DisplaySegment] = field(default_factory=list)

    @property
    def match_count(self) -> int:
        return len(self.segments)


def scan(path: str, reader, spec: SearchSpec) -> FileResult:
    """Collect every match of a binary line stream; a final unterminated line is dropped."""
    result = FileResult(path)
    matcher = spec.matcher
    for linenum, raw in enumerate(reader, 1):
        if not raw.endswith(b"\n"):
            break
        line = normalize_line(raw[:-1])
        if not matcher.line_matches(line):
            continue
        spans = matcher.find_line_spans(line)
        result.segments.extend(window_line(line, spans, linenum, spec.max_display_width))
    return result


def format_header(path: str, num: int, hl: Highlighter) -> bytes:
    return os.fsencode(f"{hl.path(path)} ({num} matches)\n")


def render_result(result: FileResult, hl: Highlighter) -> bytes:
    parts = [format_header(result.path, result.match_count, hl)]
    parts.extend(render_segment(seg, hl) for seg in result.segments)
    return b"".join(parts)


def format_path(path: str, spans, hl: Highlighter) -> bytes:
    parts = []
    last = 0
    for left, right in spans:
        parts.append(path[last:left])
        parts.append(hl.render(path[left:right], MATCH_STYLE))
        last = right
    parts.append(path[last:] + "\n")
    return os.fsencode("".join(parts))


# ---------- Concurrency ----------
class TaskCounter:
    """Counts in-flight tasks; wait() returns once all finished or one failed."""

    def __init__(self):
        self._cond = threading.Condition()
        self._count = 0
        self.error: BaseException | None = None

    def add(self, n: int = 1):
        with self._cond:
            self._count += n

    def done(self):
        with self._cond:
            self._count -= 1
            if self._count <= 0:
                self._cond.notify_all()

    def fail(self, exc: BaseException):
        with self._cond:
            if self.error is None:
                self.error = exc
            self._cond.notify_all()

    def wait(self):
        with self._cond:
            while self._count > 0 and self.error is None:
                self._cond.wait()
        if self.error is not None:
            raise self.error


class Governor:
    """
    Shared primitives of one search run. Permits bound how many files are
    open at once; every worker reports to the same task counter and output lock.
    """

    def __init__(self, out, highlighter: Highlighter, max_open_files: int = DEFAULT_MAX_OPEN_FILES):
        self.out = out
        self.highlighter = highlighter
        self.permits = threading.BoundedSemaphore(max_open_files)
        self.tasks = TaskCounter()
        self.lock = threading.Lock()

    def write(self, data: bytes):
        with self.lock:
            self.out.write(data)
            self.out.flush()

    def spawn(self, target, *args):
        self.tasks.add()

        def run():
            try:
                target(*args)
            except FangrepError as e:
                self.tasks.fail(e)
            except Exception as e:
                logger.debug("task %s failed", target.__name__, exc_info=True)
                err = FangrepError(f"{target.__name__} failed: {e!r}")
                err.__cause__ = e
                self.tasks.fail(err)
            finally:
                self.tasks.done()

        threading.Thread(target=run, daemon=True).start()

    def wait(self):
        self.tasks.wait()


def _retry_exhausted(call, path: str, delay: float, sleep):
    while True:
        try:
            return call(path)
        except OSError as e:
            if e.errno not in _EXHAUSTED:
                raise
            logger.debug("too many open files, retrying %s", path)
            sleep(delay)


def open_with_retry(path: str, opener=open, delay: float = RETRY_DELAY, sleep=time.sleep):
    """Open for binary reading, retrying for as long as descriptors are exhausted."""
    return _retry_exhausted(lambda p: opener(p, "rb"), path, delay, sleep)


def list_directory(path: str, delay: float = RETRY_DELAY, sleep=time.sleep) -> list:
    """Read all entries of a directory and close it, retrying on descriptor exhaustion."""
    def read(p):
        with os.scandir(p) as it:
            return list(it)

    return _retry_exhausted(read, path, delay, sleep)


def open_file_budget(requested: int, reserve: int = FD_RESERVE) -> int:
    """Clamp the permit count below the soft descriptor limit, leaving `reserve` free."""
    if sys.platform.startswith("win"):
        return requested
    import resource
    soft, _ = resource.getrlimit(resource.RLIMIT_NOFILE)
    if soft == resource.RLIM_INFINITY:
        return requested
    return max(1, min(requested, soft - reserve))


# ---------- Workers ----------
def search_path(path: str, spec: SearchSpec, governor: Governor):
    spans = spec.matcher.find_path_spans(path)
    governor.write(format_path(path, spans, governor.highlighter))


def search_file(path: str, spec: SearchSpec, governor: Governor):
    """Scan one file while holding a permit the dispatcher acquired for it."""
    try:
        try:
            with open_with_retry(path) as f:
                result = scan(path, f, spec)
        except OSError as e:
            logger.error("Error reading %s: %s", path, e)
            return
    finally:
        governor.permits.release()
    if result.match_count:
        governor.write(render_result(result, governor.highlighter))


def dispatch_file(path: str, size: int, spec: SearchSpec, governor: Governor):
    matcher = spec.matcher
    if not spec.include_large_files and size > spec.large_file_limit and matcher.matches_path(path):
        governor.write(os.fsencode(f"skipping large file {path}\n"))
        return
    if not matcher.matches_path(path):
        return
    if matcher.content is None:
        search_path(path, spec, governor)
        return
    # scan threads stay bounded by the permit count
    governor.permits.acquire()
    governor.spawn(search_file, path, spec, governor)


def walk_directory(path: str, spec: SearchSpec, governor: Governor):
    """List one directory: subdirectories become new walk tasks, files scan tasks."""
    try:
        # the directory is closed before dispatch may block on a permit
        for entry in list_directory(path):
            if entry.is_dir(follow_symlinks=False):
                if not spec.ignore.search(entry.path):
                    governor.spawn(walk_directory, entry.path, spec, governor)
            elif entry.is_file(follow_symlinks=False):
                size = entry.stat(follow_symlinks=False).st_size
                dispatch_file(entry.path, size, spec, governor)
    except OSError as e:
        raise WalkError(str(e)) from e


def search_tree(spec: SearchSpec, governor: Governor):
    root = spec.root_path
    try:
        st = os.lstat(root)
    except OSError as e:
        raise WalkError(str(e)) from e
    if stat.S_ISDIR(st.st_mode):
        governor.spawn(walk_directory, root, spec, governor)
    elif stat.S_ISREG(st.st_mode):
        dispatch_file(root, st.st_size, spec, governor)
    governor.wait()


def search_stream(reader, spec: SearchSpec, governor: Governor, label: str = STDIN_LABEL):
    try:
        result = scan(label, reader, spec)
    except OSError as e:
        logger.error("Error reading %s: %s", label, e)
        return
    if result.match_count:
        governor.write(render_result(result, governor.highlighter))


# ---------- CLI ----------
def stdin_is_pipe(stream=None) -> bool:
    stream = stream if stream is not None else sys.stdin
    try:
        mode = os.fstat(stream.fileno()).st_mode
    except (AttributeError, OSError, ValueError) as e:
        raise ConfigError(f"cannot stat standard input: {e}") from e
    return stat.S_ISFIFO(mode)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fangrep",
        description="Recursively search file contents (or paths) with a regular expression.",
        allow_abbrev=False,
    )
    parser.add_argument("pattern", nargs="?", help="content regular expression (case-insensitive)")
    parser.add_argument("-f", "--file", dest="file", default="",
                        help="file path regular expression (including extension)")
    parser.add_argument("-dir", "--dir", dest="dir", default="", help="starting directory path")
    parser.add_argument("-long", "--long", dest="long", action="store_true", default=None,
                        help="search long files (>5mb)")
    parser.add_argument("-no-color", "--no-color", dest="no_color", action="store_true",
                        help="disable colored output")
    parser.add_argument("-color", "--color", dest="color", action="store_true",
                        help="enable colored output")
    parser.add_argument("-width", "--width", dest="width", type=int, default=None,
                        help="maximum display width of a matched line")
    parser.add_argument("--max-open", dest="max_open", type=int, default=None,
                        help="maximum number of files open at once")
    parser.add_argument("--log-file", dest="log_file", default=None, help="also append log records to this file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _positive(name: str, value) -> int:
    try:
        num = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None
    if num <= 0:
        raise ConfigError(f"{name} must be positive, got {num}")
    return num


def build_spec(args, settings: dict, *, piped: bool = False) -> SearchSpec:
    if args.pattern is None and (not args.file or piped):
        raise ConfigError("no arguments provided")
    matcher = compile_matcher(args.pattern, args.file)

    width = args.width if args.width is not None else settings.get("max_width", DEFAULT_MAX_WIDTH)
    max_open = args.max_open if args.max_open is not None else settings.get("max_open_files", DEFAULT_MAX_OPEN_FILES)
    include_large = args.long if args.long is not None else bool(settings.get("include_large_files", False))
    try:
        large_limit = int(float(settings.get("large_file_mb", DEFAULT_LARGE_FILE_MB)) * 1024 * 1024)
    except (TypeError, ValueError):
        raise ConfigError(f"large_file_mb must be a number, got {settings.get('large_file_mb')!r}") from None
    ignore_dirs = settings.get("ignore_dirs") or DEFAULT_IGNORE_DIRS

    return SearchSpec(
        matcher=matcher,
        root_path=args.dir or os.getcwd(),
        include_large_files=include_large,
        max_open_files=open_file_budget(_positive("max open files", max_open)),
        max_display_width=_positive("width", width),
        large_file_limit=large_limit,
        ignore=ignore_regex(ignore_dirs),
    )


# ---------- Main ----------
def main(argv=None, stdin=None, stdout=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_file)
    stdin = stdin if stdin is not None else sys.stdin
    stdout = stdout if stdout is not None else sys.stdout
    settings = load_settings()

    try:
        piped = stdin_is_pipe(stdin)
        spec = build_spec(args, settings, piped=piped)
        hl = Highlighter(color_enabled(args.color, args.no_color, settings.get("color", "auto"), stdout))
        out = getattr(stdout, "buffer", stdout)
        governor = Governor(out, hl, spec.max_open_files)
        if piped:
            search_stream(getattr(stdin, "buffer", stdin), spec, governor)
        else:
            search_tree(spec, governor)
    except FangrepError as e:
        logger.critical("%s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
