import pytest


SAMPLE_LOG = [
    'Oct 17 10:00:00 tarpit systemd[1]: Started endlessh.service.',
    'Oct 17 10:00:00 tarpit endlessh[812]: 2026-10-17T10:00:00.000Z Port 22',
    'Oct 17 10:00:01 tarpit endlessh[812]: 2026-10-17T10:00:01.100Z ACCEPT host=::ffff:203.0.113.9 port=51234 fd=4 n=1/4096',
    'Oct 17 10:00:02 tarpit sshd[900]: Accepted publickey for admin from 192.0.2.1 port 40000 ssh2',
    'Oct 17 10:00:03 tarpit endlessh[812]: 2026-10-17T10:00:03.100Z ACCEPT host=::ffff:198.51.100.7 port=40022 fd=5 n=2/4096',
    'Oct 17 10:05:01 tarpit endlessh[812]: 2026-10-17T10:05:01.100Z CLOSE host=::ffff:203.0.113.9 port=51234 fd=4 time=300.000 bytes=2048',
    'Oct 17 10:06:00 tarpit endlessh[812]: 2026-10-17T10:06:00.000Z ACCEPT host=::ffff:203.0.113.9 port=51300 fd=4 n=2/4096',
]


@pytest.fixture
def sample_log():
    return list(SAMPLE_LOG)


@pytest.fixture
def log_file(tmp_path, sample_log):
    path = tmp_path / 'syslog'
    path.write_text('\n'.join(sample_log) + '\n', encoding='utf-8')
    return path


def parse_table_rows(text):
    """Cells of a markdown pipe table, header first, separator rows dropped."""
    rows = []
    for line in text.splitlines():
        if not line.startswith('|'):
            continue
        cells = [cell.strip() for cell in line.strip().strip('|').split('|')]
        if all(set(cell) <= set('-:') for cell in cells):
            continue
        rows.append(cells)
    return rows


@pytest.fixture
def table_rows():
    return parse_table_rows
