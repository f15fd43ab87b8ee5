import asyncio

from aiohttp import web

from hostblock import errors
from hostblock.config import HostException, HostFile, Hosts, HostState
from hostblock.errors import CancellationToken
from hostblock.update_worker import RuleDatabaseUpdateWorker, UpdateLedger

from http_helpers import hosts_list, serve, status


def make_worker(database, hosts, cache_dir, resolver, last_errors, **kwargs):
    calls = []

    def load_hosts():
        calls.append(1)
        return hosts

    worker = RuleDatabaseUpdateWorker(
        database, load_hosts, cache_dir, resolver, last_errors, **kwargs
    )
    return worker, calls


def test_partial_failure(database, cache_dir, resolver, last_errors):
    async def scenario():
        routes = {
            "/one": hosts_list("0.0.0.0 one.example.com\n"),
            "/two": hosts_list("0.0.0.0 two.example.com\n"),
            "/gone": status(404),
        }
        async with serve(routes) as url:
            hosts = Hosts(items=[
                HostFile("One", url("/one"), HostState.DENY),
                HostFile("Gone", url("/gone"), HostState.DENY),
                HostFile("Two", url("/two"), HostState.DENY),
            ], exceptions=[])
            worker, calls = make_worker(database, hosts, cache_dir, resolver, last_errors)
            result = await worker.run()
            return result, calls

    result, calls = asyncio.run(scenario())
    assert result.complete is False
    assert result.errors == ["Gone\n" + errors.FILE_NOT_FOUND]
    assert result.started == 3
    assert result.rebuilt is True
    assert database.snapshot == frozenset({"one.example.com", "two.example.com"})
    assert last_errors.load() == result.errors
    # Configuration is read for the fetch phase and again for the rebuild
    assert len(calls) == 2


def test_clean_cycle_clears_previous_errors(database, cache_dir, resolver, last_errors):
    last_errors.save(["Old\nFile not found"])

    async def scenario():
        async with serve({"/ads": hosts_list("0.0.0.0 ads.example.com\n")}) as url:
            hosts = Hosts(
                items=[HostFile("Ads", url("/ads"), HostState.DENY)],
                exceptions=[HostException("Shop", "ads.example.com", HostState.ALLOW)],
            )
            worker, _ = make_worker(database, hosts, cache_dir, resolver, last_errors)
            return await worker.run()

    result = asyncio.run(scenario())
    assert result.complete is True
    assert result.errors == []
    assert last_errors.load() == []
    assert not database.is_blocked("ads.example.com")


def test_global_timeout_finalizes_with_completed_sources(database, cache_dir, resolver, last_errors):
    async def scenario():
        release = asyncio.Event()

        async def never_answers(request):
            await asyncio.wait_for(release.wait(), timeout=30)
            return web.Response(text="0.0.0.0 late.example.com\n")

        routes = {"/fast": hosts_list("0.0.0.0 fast.example.com\n"), "/stuck": never_answers}
        async with serve(routes) as url:
            hosts = Hosts(items=[
                HostFile("Stuck", url("/stuck"), HostState.DENY),
                HostFile("Fast", url("/fast"), HostState.DENY),
            ], exceptions=[])
            worker, _ = make_worker(
                database, hosts, cache_dir, resolver, last_errors, timeout=0.5
            )
            result = await worker.run()
            release.set()
            return result

    result = asyncio.run(scenario())
    assert result.rebuilt is True
    assert result.errors == ["Stuck\n" + errors.UPDATE_TIMED_OUT]
    assert database.snapshot == frozenset({"fast.example.com"})


def test_literal_and_invalid_sources(database, cache_dir, resolver, last_errors):
    hosts = Hosts(items=[
        HostFile("Literal", "literal.example.com", HostState.DENY),
        HostFile("Bad", "https://", HostState.DENY),
    ], exceptions=[])
    worker, _ = make_worker(database, hosts, cache_dir, resolver, last_errors)

    result = asyncio.run(worker.run())
    assert result.started == 0
    assert result.errors == ["Bad\n" + errors.INVALID_URL.format(location="https://")]
    assert database.is_blocked("literal.example.com")


def test_garbage_permissions_are_released(database, cache_dir, resolver, last_errors, tmp_path):
    kept = tmp_path / "kept.txt"
    kept.write_text("kept.example.com\n")
    dropped = tmp_path / "dropped.txt"
    dropped.write_text("dropped.example.com\n")
    resolver.take_persistable_permission(dropped.as_uri())

    hosts = Hosts(items=[HostFile("Kept", kept.as_uri(), HostState.DENY)], exceptions=[])
    worker, _ = make_worker(database, hosts, cache_dir, resolver, last_errors)

    result = asyncio.run(worker.run())
    assert result.complete is True
    assert resolver.persisted_permissions() == [kept.as_uri()]
    assert database.snapshot == frozenset({"kept.example.com"})


def test_cancelled_rebuild_keeps_previous_snapshot(database, cache_dir, resolver, last_errors):
    database.rebuild(Hosts(items=[HostFile("Old", "old.example.com", HostState.DENY)], exceptions=[]))
    hosts = Hosts(items=[HostFile("New", "new.example.com", HostState.DENY)], exceptions=[])
    worker, _ = make_worker(database, hosts, cache_dir, resolver, last_errors)

    token = CancellationToken()
    token.cancel()
    result = asyncio.run(worker.run(token))

    assert result.rebuilt is False
    assert result.complete is True
    assert database.snapshot == frozenset({"old.example.com"})
    assert not worker.is_refreshing


def test_progress_is_reported(database, cache_dir, resolver, last_errors, tmp_path):
    local = tmp_path / "mine.txt"
    local.write_text("mine.example.com\n")
    updates = []
    hosts = Hosts(items=[HostFile("Mine", local.as_uri(), HostState.DENY)], exceptions=[])
    worker, _ = make_worker(
        database, hosts, cache_dir, resolver, last_errors,
        on_progress=lambda pending, done, total: updates.append((pending, done, total)),
    )

    asyncio.run(worker.run())
    assert updates == [(["Mine"], 0, 1), ([], 1, 1)]


def test_ledger_tracks_pending_and_done():
    item = HostFile("A", "https://a.example.org/hosts")
    ledger = UpdateLedger()
    ledger.add_begin(item)
    assert ledger.pending_count() == 1
    ledger.add_error(item, "boom")
    ledger.add_done(item)
    assert ledger.pending_count() == 0
    assert ledger.done == ["A"]
    assert ledger.error_list() == ["A\nboom"]


def test_run_periodically_stops_when_asked(database, cache_dir, resolver, last_errors):
    hosts = Hosts(items=[HostFile("Literal", "literal.example.com", HostState.DENY)], exceptions=[])

    async def scenario():
        stop = asyncio.Event()
        worker, calls = make_worker(database, hosts, cache_dir, resolver, last_errors)
        load_hosts = worker.load_hosts

        def load_and_stop():
            stop.set()
            return load_hosts()

        worker.load_hosts = load_and_stop
        await asyncio.wait_for(worker.run_periodically(3600, stop), timeout=5)
        return calls

    calls = asyncio.run(scenario())
    # One cycle: fetch phase and rebuild each read the configuration
    assert len(calls) == 2
    assert database.is_blocked("literal.example.com")


def test_unreadable_sources_still_finalize(database, cache_dir, resolver, last_errors, tmp_path):
    folder = tmp_path / "lists"
    folder.mkdir()
    hosts = Hosts(items=[
        HostFile("Folder", folder.as_uri(), HostState.DENY),
        HostFile("Nul", tmp_path.as_uri() + "/a%00b.txt", HostState.DENY),
        HostFile("Literal", "literal.example.com", HostState.DENY),
    ], exceptions=[])
    worker, _ = make_worker(database, hosts, cache_dir, resolver, last_errors)

    result = asyncio.run(worker.run())
    assert result.complete is False
    assert result.started == 2
    assert result.rebuilt is True
    assert sorted(entry.partition("\n")[0] for entry in result.errors) == ["Folder", "Nul"]
    assert all("\nUnknown error: " in entry for entry in result.errors)
    assert last_errors.load() == result.errors
    assert database.snapshot == frozenset({"literal.example.com"})
