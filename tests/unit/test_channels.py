"""Tests for chunk channels: replay, live follow, backpressure and namespacing."""

from __future__ import annotations

import asyncio

import pytest

from tether.services.channels import ChannelClosedError, ChannelHub, ChunkChannel


def _chunk(n: int) -> dict:
    return {"type": "text-delta", "id": "t", "delta": str(n)}


async def _drain(reader) -> list[dict]:
    return [chunk async for chunk in reader]


async def _until(predicate) -> None:
    while not predicate():
        await asyncio.sleep(0)


class TestChunkChannel:
    @pytest.mark.asyncio
    async def test_replay_from_offset(self) -> None:
        channel = ChunkChannel("c1", "1000")
        for n in range(5):
            await channel.write(_chunk(n))
        channel.close()
        chunks = await _drain(channel.read(2))
        assert [c["delta"] for c in chunks] == ["2", "3", "4"]

    @pytest.mark.asyncio
    async def test_offset_past_end_yields_nothing(self) -> None:
        channel = ChunkChannel("c1", "1000")
        await channel.write(_chunk(0))
        channel.close()
        assert await _drain(channel.read(10)) == []

    @pytest.mark.asyncio
    async def test_late_reader_replays_then_follows(self) -> None:
        channel = ChunkChannel("c1", "1000")
        await channel.write(_chunk(0))
        task = asyncio.create_task(_drain(channel.read(0)))
        await asyncio.sleep(0)
        await channel.write(_chunk(1))
        await channel.write(_chunk(2))
        channel.close()
        chunks = await asyncio.wait_for(task, 1.0)
        assert [c["delta"] for c in chunks] == ["0", "1", "2"]

    @pytest.mark.asyncio
    async def test_multiple_readers_see_same_chunks(self) -> None:
        channel = ChunkChannel("c1", "1000")
        readers = [asyncio.create_task(_drain(channel.read(0))) for _ in range(3)]
        await asyncio.sleep(0)
        for n in range(4):
            await channel.write(_chunk(n))
        channel.close()
        results = await asyncio.wait_for(asyncio.gather(*readers), 1.0)
        assert results[0] == results[1] == results[2]
        assert len(results[0]) == 4

    @pytest.mark.asyncio
    async def test_write_after_close_raises(self) -> None:
        channel = ChunkChannel("c1", "1000")
        channel.close()
        with pytest.raises(ChannelClosedError):
            await channel.write(_chunk(0))

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self) -> None:
        channel = ChunkChannel("c1", "1000")
        channel.close()
        channel.close()
        assert channel.closed

    @pytest.mark.asyncio
    async def test_writer_waits_for_slow_reader(self) -> None:
        channel = ChunkChannel("c1", "1000", high_water_mark=2)
        await channel.write(_chunk(0))
        await channel.write(_chunk(1))

        reader = channel.read(0)
        first = await reader.__anext__()
        assert first["delta"] == "0"
        assert channel.reader_count == 1

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(channel.write(_chunk(2)), 0.05)
        assert len(channel) == 2

        pending = asyncio.create_task(channel.write(_chunk(2)))
        second = await reader.__anext__()
        assert second["delta"] == "1"
        await asyncio.wait_for(pending, 1.0)
        assert len(channel) == 3

        await reader.aclose()
        assert channel.reader_count == 0

    @pytest.mark.asyncio
    async def test_no_readers_means_no_backpressure(self) -> None:
        channel = ChunkChannel("c1", "1000", high_water_mark=1)
        for n in range(10):
            await asyncio.wait_for(channel.write(_chunk(n)), 0.5)
        assert len(channel) == 10


class TestChannelHub:
    @pytest.mark.asyncio
    async def test_namespaces_are_isolated(self) -> None:
        hub = ChannelHub()
        await hub.open_writer("c1", "1000").write(_chunk(1))
        await hub.open_writer("c1", "2000").write(_chunk(2))
        hub.close("c1", "1000")
        hub.close("c1", "2000")
        first = await _drain(hub.open_reader("c1", "1000"))
        second = await _drain(hub.open_reader("c1", "2000"))
        assert [c["delta"] for c in first] == ["1"]
        assert [c["delta"] for c in second] == ["2"]

    @pytest.mark.asyncio
    async def test_closing_unopened_namespace_ends_readers(self) -> None:
        hub = ChannelHub()
        hub.close("c1", "1000")
        assert await _drain(hub.open_reader("c1", "1000")) == []

    @pytest.mark.asyncio
    async def test_close_ends_waiting_reader(self) -> None:
        hub = ChannelHub()
        task = asyncio.create_task(_drain(hub.open_reader("c1", "1000")))
        await asyncio.wait_for(_until(lambda: hub.subscriber_count("c1", "1000") == 1), 1.0)
        hub.close("c1", "1000")
        assert await asyncio.wait_for(task, 1.0) == []

    @pytest.mark.asyncio
    async def test_evicts_oldest_closed_channels(self) -> None:
        hub = ChannelHub(retained_streams=2)
        for ns in ("1", "2", "3"):
            hub.open_writer("c1", ns)
            hub.close("c1", ns)
        assert hub.get("c1", "1") is None
        assert hub.get("c1", "2") is not None
        assert hub.get("c1", "3") is not None

    @pytest.mark.asyncio
    async def test_open_channels_are_never_evicted(self) -> None:
        hub = ChannelHub(retained_streams=0)
        hub.open_writer("c1", "live")
        hub.close("c1", "done")
        assert hub.get("c1", "live") is not None
        assert hub.get("c1", "done") is None

    @pytest.mark.asyncio
    async def test_close_all(self) -> None:
        hub = ChannelHub()
        channel = hub.open_writer("c1", "1000")
        hub.close_all()
        assert channel.closed
