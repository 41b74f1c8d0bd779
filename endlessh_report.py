#!/usr/bin/env python3
import argparse
import csv
import gzip
import io
import math
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, List, Optional, TextIO, Tuple, Union

from rich.console import Console
from rich.markup import escape
from tabulate import tabulate

__version__ = '0.1.0'

PROJECT_NAME = 'endlessh-report'
LONG_PROJECT_NAME = 'Endlessh Reporter'
PROJECT_DESCRIPTION = 'Generates connection reports from endlessh tarpit logs'

# Report output goes to stdout untouched; diagnostics go to stderr with markup.
console = Console(highlight=False, markup=False, emoji=False, soft_wrap=True)
err_console = Console(stderr=True, soft_wrap=True)

LOG_MARKER = 'endlessh'
DEFAULT_LOG_LOCATION = '/var/log/syslog'
DEFAULT_DELIMITERS = ' '
MAPPED_IPV4_PREFIX = '::ffff:'
ACCEPT_MARKER = 'ACCEPT'

HOST_PATTERN = re.compile(r'^host=\S')
PORT_PATTERN = re.compile(r'^port=\S')
TIME_PATTERN = re.compile(r'^time=\S')
BYTES_PATTERN = re.compile(r'^bytes=\S')
UNSIGNED_PATTERN = re.compile(r'[0-9]+', re.ASCII)
SECONDS_PATTERN = re.compile(r'[0-9]+(\.[0-9]*)?', re.ASCII)

PORT_MAX = 0xFFFF
BYTES_MAX = 2 ** 64 - 1

ABUSEIPDB_CATEGORIES = '18,14,22,15'
ABUSEIPDB_HEADER = ['IP', 'Categories', 'ReportDate', 'Comment']


@dataclass
class SummaryRecord:
    accepted: int = 0
    closed: int = 0


@dataclass
class DetailedRecord:
    host: str
    accepted_connections: int = 0
    closed_connections: int = 0
    used_ports: List[int] = field(default_factory=list)
    total_seconds_wasted: float = 0.0
    total_bytes_sent: int = 0


@dataclass
class SummaryResult:
    records: Dict[str, SummaryRecord]


@dataclass
class DetailedResult:
    records: List[DetailedRecord]


AggregateResult = Union[SummaryResult, DetailedResult]


@dataclass(frozen=True)
class LineFields:
    host: Optional[str] = None
    is_accept: bool = False
    port: Optional[str] = None
    seconds: Optional[str] = None
    sent_bytes: Optional[str] = None


@dataclass(frozen=True)
class ReportConfig:
    log_location: str = DEFAULT_LOG_LOCATION
    read_from_stdin: bool = False
    print_ip_stats: bool = True
    print_connection_stats: bool = True
    abuse_ipdb_csv: bool = False
    disable_advertisement: bool = False
    detailed: bool = False

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> 'ReportConfig':
        # CSV output replaces both markdown tables
        return cls(
            log_location=args.syslog,
            read_from_stdin=args.stdin,
            print_ip_stats=not (args.no_ip_stats or args.abuse_ipdb),
            print_connection_stats=not (args.no_cn_stats or args.abuse_ipdb),
            abuse_ipdb_csv=args.abuse_ipdb,
            disable_advertisement=args.no_ad,
            detailed=args.detailed,
        )


@dataclass(frozen=True)
class Totals:
    unique_ips: int
    accepted: int
    closed: int
    seconds_wasted: float = 0.0
    bytes_sent: int = 0

    @property
    def alive(self) -> int:
        return alive_connections(self.accepted, self.closed)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROJECT_NAME,
        description=f'{PROJECT_DESCRIPTION}.',
        epilog='Example: cat <file> | %(prog)s --stdin',
    )
    parser.add_argument('-i', '--no-ip-stats', action='store_true', help="Don't print IP statistics")
    parser.add_argument('-c', '--no-cn-stats', action='store_true', help="Don't print connection statistics")
    parser.add_argument('-s', '--stdin', action='store_true', help='Read logs from stdin')
    parser.add_argument('-a', '--abuse-ipdb', action='store_true',
                        help='Enable AbuseIPDB-compatible CSV output (disables the markdown tables)')
    parser.add_argument('-n', '--no-ad', action='store_true', help='No advertising please!')
    parser.add_argument('-d', '--detailed', action='store_true',
                        help='Provide detailed information (time wasted, bytes sent)')
    parser.add_argument('-S', '--syslog', type=str, default=DEFAULT_LOG_LOCATION, metavar='PATH',
                        help=f'Override syslog/endlessh log location (default: {DEFAULT_LOG_LOCATION})')
    parser.add_argument('-v', '--version', action='version',
                        version=f'{PROJECT_NAME} v{__version__} - {PROJECT_DESCRIPTION}')
    return parser


def warn(message: str) -> None:
    err_console.print(f"[bold yellow]⚠ Warning:[/bold yellow] {escape(message)}")


def iter_stream_lines(handle: Iterable[str]) -> Iterator[str]:
    for raw_line in handle:
        yield raw_line.rstrip('\r\n')


def open_stdin() -> TextIO:
    # same decoding policy as log files, whatever the interpreter's stdin uses
    buffer = getattr(sys.stdin, 'buffer', None)
    if buffer is None:
        return sys.stdin
    return io.TextIOWrapper(buffer, encoding=sys.stdin.encoding, errors='replace')


def iter_log_lines(filepath: str) -> Iterator[str]:
    """Lazily yield lines of a plain or gzip log. OSError is left to the caller."""
    open_func = gzip.open if filepath.endswith('.gz') else open
    try:
        with open_func(filepath, 'rt', errors='replace') as handle:
            yield from iter_stream_lines(handle)
    except EOFError:
        warn(f'Truncated gzip file detected: {filepath}')


def filter_endlessh_lines(lines: Iterable[str], marker: str = LOG_MARKER) -> Iterator[str]:
    return (line for line in lines if marker in line)


def split_tokens(line: str, delimiters: str = DEFAULT_DELIMITERS) -> List[str]:
    if not delimiters:
        return [line] if line else []
    pattern = '[' + re.escape(delimiters) + ']'
    return [token for token in re.split(pattern, line) if token]


def token_value(token: str) -> str:
    return token.split('=', 1)[1]


def classify_tokens(tokens: Iterable[str], detailed: bool = False) -> LineFields:
    # last match wins for repeated keys
    host = port = seconds = sent_bytes = None
    is_accept = False
    for token in tokens:
        if HOST_PATTERN.match(token):
            host = token_value(token)
        elif token == ACCEPT_MARKER:
            is_accept = True
        elif not detailed:
            continue
        elif PORT_PATTERN.match(token):
            port = token_value(token)
        elif TIME_PATTERN.match(token):
            seconds = token_value(token)
        elif BYTES_PATTERN.match(token):
            sent_bytes = token_value(token)
    return LineFields(host=host, is_accept=is_accept, port=port, seconds=seconds, sent_bytes=sent_bytes)


def parse_line(line: str, detailed: bool = False) -> Optional[LineFields]:
    tokens = split_tokens(line)
    if not tokens:
        warn(f'Failed to parse {line!r}.')
        return None
    fields = classify_tokens(tokens, detailed=detailed)
    if fields.host is None:
        return None
    return fields


def parse_unsigned(value: str, upper: int) -> Optional[int]:
    # plain ASCII digits only
    if not UNSIGNED_PATTERN.fullmatch(value):
        return None
    number = int(value)
    if number > upper:
        return None
    return number


def parse_seconds(value: str) -> Optional[float]:
    if not SECONDS_PATTERN.fullmatch(value):
        return None
    seconds = float(value)
    if not math.isfinite(seconds):
        return None
    return seconds


def _malformed(name: str, value: str, line: str) -> None:
    warn(f'Ignoring malformed {name}={value} in line: {line}')


def get_connections(lines: Iterable[str]) -> SummaryResult:
    connections: Dict[str, SummaryRecord] = {}
    for line in lines:
        fields = parse_line(line)
        if fields is None:
            continue
        record = connections.setdefault(fields.host, SummaryRecord())
        if fields.is_accept:
            record.accepted += 1
        else:
            record.closed += 1
    return SummaryResult(records=dict(sorted(connections.items())))


def get_detailed_connections(lines: Iterable[str]) -> DetailedResult:
    # dicts keep insertion order, so first-seen order survives the lookup
    connections: Dict[str, DetailedRecord] = {}
    for line in lines:
        fields = parse_line(line, detailed=True)
        if fields is None:
            continue
        record = connections.get(fields.host)
        if record is None:
            record = connections[fields.host] = DetailedRecord(host=fields.host)

        if fields.is_accept:
            record.accepted_connections += 1
            if fields.port is not None:
                port = parse_unsigned(fields.port, PORT_MAX)
                if port is None:
                    _malformed('port', fields.port, line)
                else:
                    record.used_ports.append(port)
            continue

        record.closed_connections += 1
        if fields.sent_bytes is not None:
            sent_bytes = parse_unsigned(fields.sent_bytes, BYTES_MAX)
            if sent_bytes is None:
                _malformed('bytes', fields.sent_bytes, line)
            else:
                record.total_bytes_sent += sent_bytes
        if fields.seconds is not None:
            seconds = parse_seconds(fields.seconds)
            if seconds is None:
                _malformed('time', fields.seconds, line)
            else:
                record.total_seconds_wasted += seconds
    return DetailedResult(records=list(connections.values()))


def aggregate(lines: Iterable[str], detailed: bool = False) -> AggregateResult:
    if detailed:
        return get_detailed_connections(lines)
    return get_connections(lines)


def strip_mapped_prefix(host: str) -> str:
    offset = host.find(MAPPED_IPV4_PREFIX)
    if offset == -1:
        return host
    return host[offset + len(MAPPED_IPV4_PREFIX):]


def alive_connections(accepted: int, closed: int) -> int:
    return max(accepted, closed) - min(accepted, closed)


def open_connections(accepted: int, closed: int) -> Tuple[int, int]:
    """Return ``(open, closed)`` for the AbuseIPDB comment.

    More closes than accepts happen when the log was rotated while a
    connection was still open; the difference is folded into the closed count.
    """
    still_open = accepted - closed
    if still_open < 0:
        still_open = -still_open
        closed += still_open
    return still_open, closed


def compute_totals(result: AggregateResult) -> Totals:
    if isinstance(result, SummaryResult):
        return Totals(
            unique_ips=len(result.records),
            accepted=sum(r.accepted for r in result.records.values()),
            closed=sum(r.closed for r in result.records.values()),
        )
    return Totals(
        unique_ips=len(result.records),
        accepted=sum(r.accepted_connections for r in result.records),
        closed=sum(r.closed_connections for r in result.records),
        seconds_wasted=sum(r.total_seconds_wasted for r in result.records),
        bytes_sent=sum(r.total_bytes_sent for r in result.records),
    )


def format_duration(seconds: float) -> str:
    seconds = round(seconds, 2)
    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)
    parts = []
    if days:
        parts.append(f'{int(days)}d')
    if parts or hours:
        parts.append(f'{int(hours)}h')
    if parts or minutes:
        parts.append(f'{int(minutes)}m')
    parts.append(f'{secs:.2f}s')
    return ' '.join(parts)


def format_bytes(count: int) -> str:
    if count < 1024:
        return f'{count} B'
    value = float(count)
    for unit in ('KiB', 'MiB', 'GiB', 'TiB'):
        value /= 1024
        if value < 1024 or unit == 'TiB':
            break
    return f'{value:.2f} {unit}'


def current_iso_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def advertisement() -> str:
    return f'Report generated by {LONG_PROJECT_NAME} v{__version__}'


def markdown_table(rows: List[List[object]], headers: List[str]) -> str:
    return tabulate(rows, headers=headers, tablefmt='github', stralign='center',
                    numalign='center', disable_numparse=True)


def render_ip_stats(result: AggregateResult) -> str:
    if isinstance(result, SummaryResult):
        rows = [[strip_mapped_prefix(host), record.accepted, record.closed]
                for host, record in result.records.items()]
        return markdown_table(rows, ['Host', 'Accepted', 'Closed'])

    rows = [
        [
            strip_mapped_prefix(record.host),
            record.accepted_connections,
            record.closed_connections,
            format_duration(record.total_seconds_wasted),
            format_bytes(record.total_bytes_sent),
        ]
        for record in result.records
    ]
    return markdown_table(rows, ['Host', 'Accepted', 'Closed', 'Total Time (s)', 'Total Bytes'])


def render_connection_stats(totals: Totals) -> str:
    headers = ['Total Unique IPs', 'Total Accepted Connections', 'Total Closed Connections',
               'Total Alive Connections']
    row: List[object] = [totals.unique_ips, totals.accepted, totals.closed, totals.alive]
    if totals.seconds_wasted > 0:
        headers.append('Total Bot Time Wasted')
        row.append(format_duration(totals.seconds_wasted))
    if totals.bytes_sent > 0:
        headers.append('Total Bytes Sent')
        row.append(format_bytes(totals.bytes_sent))
    return markdown_table([row], headers)


def abuseipdb_rows(result: AggregateResult, timestamp: str,
                   disable_advertisement: bool = False) -> Iterator[List[str]]:
    suffix = '' if disable_advertisement else ' ' + advertisement()
    if isinstance(result, SummaryResult):
        for host, record in result.records.items():
            ip = strip_mapped_prefix(host)
            still_open, closed = open_connections(record.accepted, record.closed)
            comment = (f'{ip} fell into Endlessh tarpit; {still_open}/{closed} total connections '
                       f'are currently still open.{suffix}')
            yield [ip, ABUSEIPDB_CATEGORIES, timestamp, comment]
        return

    for record in result.records:
        ip = strip_mapped_prefix(record.host)
        still_open, closed = open_connections(record.accepted_connections, record.closed_connections)
        comment = (f'{ip} fell into Endlessh tarpit; {still_open}/{closed} total connections '
                   f'are currently still open. '
                   f'Total time wasted: {format_duration(record.total_seconds_wasted)}. '
                   f'Total bytes sent by tarpit: {format_bytes(record.total_bytes_sent)}.{suffix}')
        yield [ip, ABUSEIPDB_CATEGORIES, timestamp, comment]


def write_abuseipdb_csv(result: AggregateResult, handle: TextIO, timestamp: str,
                        disable_advertisement: bool = False) -> None:
    writer = csv.writer(handle, lineterminator='\n')
    writer.writerow(ABUSEIPDB_HEADER)
    writer.writerows(abuseipdb_rows(result, timestamp, disable_advertisement))


def render_report(result: AggregateResult, config: ReportConfig, now: Optional[datetime] = None) -> None:
    timestamp = current_iso_timestamp(now)

    if config.abuse_ipdb_csv:
        err_console.print('Using categories for hacking, brute-force, sshd, port sniffing')
        write_abuseipdb_csv(result, sys.stdout, timestamp, config.disable_advertisement)
        return

    if not config.disable_advertisement:
        console.print(f'# Report generated by {LONG_PROJECT_NAME} at {timestamp}')

    if config.print_ip_stats:
        console.print('# Statistics per IP')
        console.print(render_ip_stats(result))
        console.print()

    if config.print_connection_stats:
        console.print('# Connection Statistics')
        console.print(render_connection_stats(compute_totals(result)))


def main(argv: List[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = ReportConfig.from_args(args)

    if config.abuse_ipdb_csv:
        warn('Disabling markdown-compatible output tables for AbuseIPDB compatibility!')

    if config.read_from_stdin:
        source = '<stdin>'
        lines = iter_stream_lines(open_stdin())
    else:
        source = config.log_location
        lines = iter_log_lines(config.log_location)

    try:
        result = aggregate(filter_endlessh_lines(lines), detailed=config.detailed)
    except OSError as exc:
        reason = exc.strerror or str(exc)
        err_console.print(f"[bold red]✖ Error:[/bold red] Failed to open {escape(source)}: {escape(reason)}")
        sys.exit(1)

    if not result.records:
        warn(f'No endlessh connections found in {source}.')

    render_report(result, config)


if __name__ == '__main__':
    main()
