import pytest

LOCK_COLUMNS = [
    "waiting_pid", "other_pid", "waiting_mode", "other_mode",
    "other_granted", "waiting_query", "other_query",
]

ALTER = "ALTER TABLE t ADD COLUMN b int"
UPDATE = "UPDATE t SET a = 1"

LOCK_ROWS = [
    ["101", "200", "RowExclusiveLock", "AccessExclusiveLock", "t", UPDATE, ALTER],
    ["102", "200", "AccessShareLock", "AccessExclusiveLock", "t", "SELECT * FROM t", ALTER],
    ["103", "200", "AccessShareLock", "AccessExclusiveLock", "t", "SELECT count(*) FROM t", ALTER],
    ["200", "101", "AccessExclusiveLock", "RowExclusiveLock", "t", ALTER, UPDATE],
    ["102", "101", "AccessShareLock", "AccessExclusiveLock", "f", "SELECT * FROM t", UPDATE],
]


def psql_table(columns, rows, trailer=""):
    """Render rows the way psql's aligned output does."""
    widths = [max([len(c)] + [len(r[i]) for r in rows]) for i, c in enumerate(columns)]
    lines = ["|".join(f" {c.center(w)} " for c, w in zip(columns, widths))]
    lines.append("+".join("-" * (w + 2) for w in widths))
    for row in rows:
        lines.append("|".join(f" {v.ljust(w)} " for v, w in zip(row, widths)))
    lines.append(f"({len(rows)} row{'' if len(rows) == 1 else 's'})")
    return "\n".join(lines) + "\n" + trailer


@pytest.fixture
def render_table():
    return psql_table


@pytest.fixture
def lock_dump():
    return psql_table(LOCK_COLUMNS, LOCK_ROWS, trailer="\n")


@pytest.fixture
def lock_record():
    def make(waiting_pid, other_pid, waiting_mode="AccessShareLock",
             other_mode="AccessExclusiveLock", other_granted="t"):
        return {
            "waiting_pid": waiting_pid,
            "other_pid": other_pid,
            "waiting_mode": waiting_mode,
            "other_mode": other_mode,
            "other_granted": other_granted,
            "waiting_query": "SELECT 1",
            "other_query": "LOCK TABLE t",
            "waiting_query_kind": "SELECT",
            "other_query_kind": "LOCK",
        }
    return make
