"""Payload delivery and execution.

A payload is a directory (or an in-memory mapping of relative paths to
contents) packed into a gzip'd tar bundle, pushed over the bulk channel,
verified, and then unpacked and run by the agent. The entrypoint never
runs if the bundle fails verification.

Bundles are byte-for-byte reproducible (sorted entries, zeroed times and
owners), so re-sending an unchanged payload resumes or skips the transfer.
"""

from __future__ import annotations

import asyncio
import gzip
import io
import tarfile
from pathlib import Path, PurePosixPath
from typing import Mapping, Optional, Sequence, Union

import structlog

from hostwire.core.exceptions import InvalidRequestError
from hostwire.operations.command import CommandStream
from hostwire.operations.transfer import DEFAULT_CHUNK_SIZE, TransferReceipt, push_bytes
from hostwire.session.session import ResponseStream, Session
from hostwire.wire.messages import Operation


log = structlog.get_logger()

PayloadSource = Union[Path, str, Mapping[str, Union[bytes, str]]]


def _add_entry(tar: tarfile.TarFile, name: str, data: bytes, mode: int) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    tar.addfile(info, io.BytesIO(data))


def _collect(source: PayloadSource) -> dict[str, tuple[bytes, int]]:
    """Gather (contents, mode) per relative POSIX path."""
    if isinstance(source, Mapping):
        entries = {}
        for name, content in source.items():
            data = content.encode("utf-8") if isinstance(content, str) else bytes(content)
            entries[str(PurePosixPath(name))] = (data, 0o755)
        return entries

    root = Path(source)
    if not root.is_dir():
        raise InvalidRequestError(Operation.PAYLOAD_RUN, f"payload source {root} is not a directory")
    return {
        path.relative_to(root).as_posix(): (path.read_bytes(), path.stat().st_mode & 0o7777)
        for path in root.rglob("*")
        if path.is_file()
    }


def pack_payload(source: PayloadSource) -> bytes:
    """Pack a payload source into a reproducible tar.gz bundle."""
    entries = _collect(source)
    if not entries:
        raise InvalidRequestError(Operation.PAYLOAD_RUN, "payload is empty")

    buffer = io.BytesIO()
    with gzip.GzipFile(fileobj=buffer, mode="wb", mtime=0) as gz:
        with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
            for name in sorted(entries):
                data, mode = entries[name]
                _add_entry(tar, name, data, mode)
    return buffer.getvalue()


def _check_entrypoint(source: PayloadSource, entrypoint: str) -> str:
    if not isinstance(entrypoint, str) or not entrypoint.strip():
        raise InvalidRequestError(Operation.PAYLOAD_RUN, "entrypoint must not be empty")
    relative = PurePosixPath(entrypoint)
    if relative.is_absolute() or ".." in relative.parts:
        raise InvalidRequestError(
            Operation.PAYLOAD_RUN, f"entrypoint {entrypoint!r} must be relative to the payload root"
        )
    if isinstance(source, Mapping):
        present = str(relative) in {str(PurePosixPath(name)) for name in source}
    else:
        present = (Path(source) / relative).is_file()
    if not present:
        raise InvalidRequestError(Operation.PAYLOAD_RUN, f"entrypoint {entrypoint!r} is not in the payload")
    return str(relative)


class PayloadStream(CommandStream):
    """Output of a running payload entrypoint."""

    def __init__(self, stream: ResponseStream, receipt: TransferReceipt) -> None:
        super().__init__(stream)
        self.receipt = receipt


async def send_payload(
    session: Session,
    source: PayloadSource,
    entrypoint: str,
    args: Sequence[str] = (),
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    timeout: Optional[float] = None,
) -> PayloadStream:
    """Deliver a payload and start its entrypoint.

    Raises:
        InvalidRequestError: Missing entrypoint or empty payload.
        PayloadIntegrityError: The bundle failed verification; nothing ran.
    """
    entrypoint = _check_entrypoint(source, entrypoint)
    if not all(isinstance(arg, str) for arg in args):
        raise InvalidRequestError(Operation.PAYLOAD_RUN, "arguments must be strings")

    bundle = await asyncio.to_thread(pack_payload, source)
    receipt = await push_bytes(session, bundle, chunk_size=chunk_size, timeout=timeout)
    log.info(
        "payload_delivered",
        host=session.host,
        transfer_id=receipt.transfer_id,
        size=receipt.size,
        entrypoint=entrypoint,
    )

    stream = await session.execute(
        Operation.PAYLOAD_RUN,
        {"transfer_id": receipt.transfer_id, "entrypoint": entrypoint, "args": list(args)},
        timeout=timeout,
    )
    return PayloadStream(stream, receipt)
