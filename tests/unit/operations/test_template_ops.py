"""Tests for template rendering."""

from typing import Any, Mapping

import pytest

from hostwire.core.config import TransportConfig
from hostwire.core.exceptions import (
    AgentError,
    FileAlreadyExists,
    FilePermissionDenied,
    InvalidRequestError,
    ProtocolError,
    TemplateRenderError,
)
from hostwire.operations import transfer
from hostwire.protocols.renderer import TemplateRenderer
from hostwire.session.host import Host
from hostwire.wire.messages import Operation


NGINX_SITE = "server {{\n    listen {port};\n    server_name {server_name};\n}}\n"


class UpperRenderer:
    """Local renderer that formats then upper-cases."""

    def render(self, source: str, variables: Mapping[str, Any]) -> str:
        return source.format_map(variables).upper()


class BrokenRenderer:
    def render(self, source: str, variables: Mapping[str, Any]) -> str:
        raise ValueError("unexpected end of template")


class TestAgentRendering:
    """Tests for agent-side rendering."""

    @pytest.mark.asyncio
    async def test_render(self, host):
        """Variables are substituted by the agent."""
        result = await host.render_template(NGINX_SITE, {"port": 80, "server_name": "example.com"})
        assert "listen 80;" in result.text
        assert "server_name example.com;" in result.text
        assert result.destination is None

    @pytest.mark.asyncio
    async def test_render_to_destination(self, host, agent):
        """The rendered text is written to the destination."""
        result = await host.render_template(
            "{greeting}\n", {"greeting": "hello"}, destination="/etc/motd"
        )
        assert result.destination == "/etc/motd"
        assert agent.files["/etc/motd"] == b"hello\n"

    @pytest.mark.asyncio
    async def test_undefined_variable_reports_line(self, host):
        """A missing variable raises TemplateRenderError with its line."""
        with pytest.raises(TemplateRenderError) as exc_info:
            await host.render_template(NGINX_SITE, {"port": 80})
        assert exc_info.value.line == 3
        assert "server_name" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_no_overwrite(self, host, agent):
        """overwrite=False keeps an existing destination."""
        agent.files["/etc/motd"] = b"keep"
        with pytest.raises(FileAlreadyExists):
            await host.render_template("x", destination="/etc/motd", overwrite=False)
        assert agent.files["/etc/motd"] == b"keep"

    @pytest.mark.asyncio
    async def test_protected_destination(self, host):
        """Writing to a protected path raises FilePermissionDenied."""
        with pytest.raises(FilePermissionDenied):
            await host.render_template("x", destination="/etc/shadow")

    @pytest.mark.asyncio
    async def test_source_too_large_for_transport(self, agent):
        """A source beyond the record limit is refused and leaves the host usable."""
        small_records = TransportConfig(max_record_size=64 * 1024, chunk_size=1024)
        async with Host("web-1", agent.config(), small_records) as host:
            with pytest.raises(InvalidRequestError, match="exceeds limit"):
                await host.render_template("x" * (128 * 1024))
            assert host.session.pending_count == 0

            result = await host.render_template("{name}", {"name": "web"})
            assert result.text == "web"

    @pytest.mark.asyncio
    async def test_invalid_utf8_from_agent(self, host, agent):
        """Rendered bytes that are not UTF-8 raise ProtocolError."""

        async def latin1_render(request, reply):
            return {"text": "café".encode("latin-1")}

        agent.server.register(Operation.TEMPLATE_RENDER, latin1_render)
        with pytest.raises(ProtocolError, match="invalid UTF-8") as exc_info:
            await host.render_template("{x}", {"x": 1})
        assert isinstance(exc_info.value.__cause__, UnicodeDecodeError)
        assert host.connected

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, host):
        """Non-string sources and variable names are rejected locally."""
        with pytest.raises(InvalidRequestError, match="source"):
            await host.render_template(b"bytes")
        with pytest.raises(InvalidRequestError, match="variable names"):
            await host.render_template("{0}", {0: "x"})


class TestLocalRendering:
    """Tests for client-side renderers."""

    def test_protocol(self):
        """Any object with render() is a TemplateRenderer."""
        assert isinstance(UpperRenderer(), TemplateRenderer)
        assert not isinstance(object(), TemplateRenderer)

    @pytest.mark.asyncio
    async def test_local_render(self, host, agent):
        """A local renderer bypasses the agent for rendering."""
        result = await host.render_template("{name}", {"name": "web"}, renderer=UpperRenderer())
        assert result.text == "WEB"
        assert agent.files == {}

    @pytest.mark.asyncio
    async def test_local_render_uploads(self, host, agent):
        """Local output is uploaded to the destination."""
        result = await host.render_template(
            "{name}\n", {"name": "web"}, destination="/tmp/out", renderer=UpperRenderer()
        )
        assert result.destination == "/tmp/out"
        assert agent.files["/tmp/out"] == b"WEB\n"

    @pytest.mark.asyncio
    async def test_local_upload_uses_transport_chunk_size(self, host, agent, transport_config, monkeypatch):
        """Locally rendered output is chunked like any other upload."""
        sizes = []
        original = transfer.build_chunks

        def recording(handle, data, chunk_size, start=0):
            sizes.append(chunk_size)
            return original(handle, data, chunk_size, start)

        monkeypatch.setattr(transfer, "build_chunks", recording)
        text = "{line}\n" * 500
        await host.render_template(text, {"line": "x" * 9}, destination="/tmp/big", renderer=UpperRenderer())

        assert sizes == [transport_config.chunk_size]
        assert agent.files["/tmp/big"] == ("X" * 9 + "\n").encode() * 500

    @pytest.mark.asyncio
    async def test_renderer_errors_are_wrapped(self, host):
        """Other exceptions from a renderer become TemplateRenderError."""
        with pytest.raises(TemplateRenderError, match="unexpected end") as exc_info:
            await host.render_template("{% if %}", renderer=BrokenRenderer())
        assert exc_info.value.line is None
        assert isinstance(exc_info.value.__cause__, ValueError)


class TestEngineSelection:
    """Tests for choosing the agent-side engine."""

    @pytest.mark.asyncio
    async def test_named_engine(self, host):
        """A supported engine name is passed through."""
        result = await host.render_template("{x}", {"x": 1}, engine="format")
        assert result.text == "1"

    @pytest.mark.asyncio
    async def test_unsupported_engine(self, host):
        """The agent rejects engines it does not have."""
        with pytest.raises(AgentError) as exc_info:
            await host.render_template("{x}", {"x": 1}, engine="jinja2")
        assert exc_info.value.code == "invalid_request"
