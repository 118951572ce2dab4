from unittest.mock import patch

import pytest
from medivault.errors import NotFound, StorageFailure
from medivault.services.attachments import AttachmentManager, sanitize_filename


async def test_store_then_retrieve_is_byte_identical(attachments):
    payload = bytes(range(256)) * 1024
    stored = await attachments.store(payload, "scan.png")

    assert stored.size == len(payload)
    retrieved = await attachments.retrieve(stored.stored_name)
    assert retrieved.size == len(payload)
    assert await retrieved.read() == payload

    chunks = [chunk async for chunk in retrieved.iter_bytes(chunk_size=1000)]
    assert b"".join(chunks) == payload


async def test_stored_name_is_time_prefixed(tmp_path):
    manager = AttachmentManager(tmp_path, clock=lambda: 1718000000000000000)
    stored = await manager.store(b"x", "report.pdf")
    assert stored.stored_name == "1718000000000000000-report.pdf"


async def test_same_name_never_overwrites(tmp_path):
    ticks = iter([1, 1, 2])
    manager = AttachmentManager(tmp_path, clock=lambda: next(ticks))
    first = await manager.store(b"first", "report.pdf")
    second = await manager.store(b"second", "report.pdf")

    assert first.stored_name == "1-report.pdf"
    assert second.stored_name == "2-report.pdf"
    assert await (await manager.retrieve(first.stored_name)).read() == b"first"


@pytest.mark.parametrize(
    "original,expected",
    [
        ("../../etc/passwd", "passwd"),
        ("C:\\Users\\ann\\lab results.pdf", "lab_results.pdf"),
        ("..", "upload"),
        ("", "upload"),
    ],
)
def test_sanitize_filename(original, expected):
    assert sanitize_filename(original) == expected


async def test_retrieve_defaults_to_download(attachments):
    stored = await attachments.store(b"%PDF", "report.pdf")
    download = await attachments.retrieve(stored.stored_name)
    inline = await attachments.retrieve(stored.stored_name, inline=True)
    assert download.content_disposition == f'attachment; filename="{stored.stored_name}"'
    assert inline.content_disposition.startswith("inline;")


async def test_missing_blob_is_not_found(attachments):
    with pytest.raises(NotFound):
        await attachments.retrieve("123-missing.pdf")


@pytest.mark.parametrize("name", ["../secret", "..", "a/b", "a\\b", ""])
async def test_names_outside_blob_area_rejected(attachments, name):
    with pytest.raises(NotFound):
        await attachments.retrieve(name)


async def test_write_failure_is_storage_failure(attachments):
    with patch("medivault.services.attachments.aiofiles.open", side_effect=PermissionError("denied")):
        with pytest.raises(StorageFailure):
            await attachments.store(b"x", "report.pdf")
