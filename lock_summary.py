import os
import sys
import json
import logging
import argparse
from collections import defaultdict
from enum import Enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional, TextIO
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table
from rich import box

from dump_reader import DumpFormatError, DumpReader, Record, query_kind

logger = logging.getLogger(__name__)

WANTED_ONLY_ENV = "LOCK_SUMMARY_WANTED_ONLY"


class OutputMode(Enum):
    SUMMARY = "summary"
    JSON = "json"

    @classmethod
    def from_arg(cls, value: Optional[str]) -> "OutputMode":
        return cls.JSON if value == "json" else cls.SUMMARY


@dataclass(frozen=True)
class Options:
    mode: OutputMode = OutputMode.SUMMARY
    wanted_only: bool = False
    show_table: bool = True
    verbose: bool = False


@dataclass
class PidNode:
    pid: str
    blocking: List[Record] = field(default_factory=list)  # rows where pid is other_pid
    blocked_on: List[Record] = field(default_factory=list)  # rows where pid is waiting_pid


class BlockingGraph:
    def __init__(self, wanted_only: bool = False):
        self.wanted_only = wanted_only
        self.nodes: Dict[str, PidNode] = {}
        self.skipped = 0

    def node(self, pid: str) -> PidNode:
        if pid not in self.nodes:
            self.nodes[pid] = PidNode(pid)
        return self.nodes[pid]

    def add(self, record: Record):
        # Only keep rows where the other side actually holds the lock
        if self.wanted_only and record.get("other_granted") == "f":
            self.skipped += 1
            return

        waiting = self.node(record.get("waiting_pid", ""))
        other = self.node(record.get("other_pid", ""))
        other.blocking.append(record)
        waiting.blocked_on.append(record)


@dataclass
class LockGroupLine:
    lock: str  # "holds <mode>" or "wants <mode>"
    count: int
    waiting_mode: str
    example_pid: str


@dataclass
class PidReport:
    pid: str
    query: str
    query_kind: str
    blocking_count: int
    blocked_on_count: int
    groups: List[LockGroupLine]


def lock_key(record: Record) -> str:
    verb = "holds" if record.get("other_granted") == "t" else "wants"
    return f"{verb} {record.get('other_mode', '')}"


def group_waiters(blocking: List[Record]) -> List[LockGroupLine]:
    groups: Dict[str, Dict[str, List[str]]] = defaultdict(lambda: defaultdict(list))
    for record in blocking:
        groups[lock_key(record)][record.get("waiting_mode", "")].append(record.get("waiting_pid", ""))

    lines = []
    for lock in sorted(groups):
        for waiting_mode in sorted(groups[lock]):
            pids = groups[lock][waiting_mode]
            lines.append(LockGroupLine(lock, len(pids), waiting_mode, pids[0]))
    return lines


def build_report(graph: BlockingGraph) -> List[PidReport]:
    """Pids that block someone, fewest blocked first.

    sorted() is stable, so equal counts keep the order in which the pids
    first appeared in the input.
    """
    blockers = [node for node in graph.nodes.values() if node.blocking]
    blockers = sorted(blockers, key=lambda node: len(node.blocking))

    report = []
    for node in blockers:
        first = node.blocking[0]
        query = first.get("other_query", "")
        report.append(PidReport(
            pid=node.pid,
            query=query,
            query_kind=first.get("other_query_kind", query_kind(query)),
            blocking_count=len(node.blocking),
            blocked_on_count=len(node.blocked_on),
            groups=group_waiters(node.blocking),
        ))
    return report


def print_blocking_table(report: List[PidReport], console: Console):
    table = Table(
        box=box.MINIMAL_HEAVY_HEAD,
        title="Lock Contention Summary",
        caption="rows are potential conflicts, lock modes are not checked",
    )

    table.add_column("Pid", justify="right", style="cyan")
    table.add_column("Blocking", justify="right")
    table.add_column("Blocked on", justify="right")
    table.add_column("Query kind", justify="left")

    for entry in report:
        table.add_row(
            escape(entry.pid),
            f"{entry.blocking_count}",
            f"{entry.blocked_on_count}",
            escape(entry.query_kind),
        )

    console.print(table)


def print_report(report: List[PidReport], console: Console):
    if not report:
        console.print("[green]No blocking pids found[/green]")
        return

    for entry in report:
        # one physical line per entry, query text printed verbatim
        console.print(
            f"[cyan]pid {escape(entry.pid)}:[/cyan] {escape(entry.query)}",
            highlight=False, soft_wrap=True, emoji=False,
        )
        for line in entry.groups:
            console.print(
                f"  {escape(line.lock)}: {line.count} waiting for "
                f"{escape(line.waiting_mode)} (e.g. pid {escape(line.example_pid)})",
                highlight=False, soft_wrap=True, emoji=False,
            )
        console.print("")


class LockSession:
    """Everything one run needs: options, the reader and where rows go."""

    def __init__(self, options: Options, out: TextIO):
        self.options = options
        self.out = out
        self.graph = BlockingGraph(wanted_only=options.wanted_only)
        self.reader = DumpReader(self.dispatch)

    def dispatch(self, record: Record):
        if self.options.mode is OutputMode.JSON:
            self.out.write(json.dumps(record) + "\n")
        else:
            self.graph.add(record)

    def run(self, lines) -> Optional[List[PidReport]]:
        self.reader.feed_lines(lines)
        logger.debug(
            "%d rows decoded, %d skipped as not granted",
            self.reader.rows_decoded, self.graph.skipped,
        )
        if self.options.mode is OutputMode.JSON:
            return None

        report = build_report(self.graph)
        console = Console(file=self.out, soft_wrap=True, emoji=False)
        if self.options.show_table and report:
            print_blocking_table(report, console)
        print_report(report, console)
        return report


def parse_args(argv: Optional[List[str]] = None) -> Options:
    parser = argparse.ArgumentParser(
        prog="lock-summary",
        description="Summarize lock waits from psql output read on stdin.",
    )
    parser.add_argument("mode", nargs="?", help="'json' to print every row as JSON, otherwise summarize")
    parser.add_argument("--wanted-only", action="store_true",
                        help="ignore rows where the other pid has not been granted its lock")
    parser.add_argument("--no-table", action="store_true", help="skip the overview table")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging on stderr")
    args = parser.parse_args(argv)

    return Options(
        mode=OutputMode.from_arg(args.mode),
        wanted_only=args.wanted_only or os.environ.get(WANTED_ONLY_ENV) == "1",
        show_table=not args.no_table,
        verbose=args.verbose,
    )


def main(argv: Optional[List[str]] = None):
    options = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if options.verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_time=False, show_path=False)],
    )
    session = LockSession(options, sys.stdout)
    try:
        session.run(sys.stdin)
    except DumpFormatError as e:
        print(f"lock-summary: malformed input, {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
