import os

import pytest


def _get_memgraph_connection_config() -> tuple[str, int]:
    host = os.getenv("MEMGRAPH_HOST")
    if not host:
        pytest.skip("MEMGRAPH_HOST is not set")
    raw_port = os.getenv("MEMGRAPH_PORT", "7687")
    try:
        port = int(raw_port)
    except ValueError as exc:
        pytest.fail(f"MEMGRAPH_PORT must be an integer: {exc}", pytrace=False)
    return host, port


def _assert_memgraph_connection(storage) -> None:
    try:
        result = next(storage.db.execute_and_fetch("RETURN 1 AS ok;"), None)
    except Exception as exc:  # pragma: no cover - connectivity/driver errors
        pytest.fail(f"Memgraph connection failed: {exc}", pytrace=False)
    if not result or result.get("ok") != 1:
        pytest.fail("Memgraph RETURN 1 check failed", pytrace=False)


@pytest.fixture()
def memgraph_storage():
    host, port = _get_memgraph_connection_config()
    from living_story.storage.memgraph_storage import MemgraphStoryStorage

    try:
        storage = MemgraphStoryStorage(host=host, port=port)
    except Exception as exc:  # pragma: no cover - fail-fast with clear reason
        pytest.fail(
            f"failed to create MemgraphStoryStorage (check MEMGRAPH_HOST/MEMGRAPH_PORT): {exc}",
            pytrace=False,
        )

    _assert_memgraph_connection(storage)
    storage.db.execute("MATCH (n) DETACH DELETE n;")
    storage.ensure_indexes()
    try:
        yield storage
    finally:
        storage.db.execute("MATCH (n) DETACH DELETE n;")
        storage.close()
