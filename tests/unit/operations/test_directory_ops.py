"""Tests for remote directory operations against the fake agent."""

import pytest

from hostwire.core.exceptions import AgentError, FileAlreadyExists, FileNotFound, FilePermissionDenied


class TestDirectoryQueries:
    """Tests for exists, is_directory and list."""

    @pytest.mark.asyncio
    async def test_exists(self, host):
        """Known directories exist; files and missing paths do not."""
        assert await host.directory_op("exists", "/var/www")
        assert await host.directory_op("is_directory", "/etc")
        assert not await host.directory_op("exists", "/srv")

    @pytest.mark.asyncio
    async def test_list(self, host, agent):
        """Entries are immediate children, sorted."""
        agent.files["/var/www/index.html"] = b""
        agent.files["/var/www/static/app.js"] = b""
        agent.directories.add("/var/www/static")

        assert await host.directory_op("list", "/var/www") == ["index.html", "static"]

    @pytest.mark.asyncio
    async def test_list_missing(self, host):
        """Listing a missing directory raises FileNotFound."""
        with pytest.raises(FileNotFound):
            await host.directory_op("list", "/srv")


class TestDirectoryCreate:
    """Tests for create."""

    @pytest.mark.asyncio
    async def test_create(self, host, agent):
        """create reports a change only the first time."""
        assert await host.directory_op("create", "/tmp/build") is True
        assert "/tmp/build" in agent.directories
        assert await host.directory_op("create", "/tmp/build") is False

    @pytest.mark.asyncio
    async def test_create_nested_requires_recursive(self, host, agent):
        """Missing parents are only created with recursive=True."""
        with pytest.raises(FileNotFound):
            await host.directory_op("create", "/srv/app/releases")

        await host.directory_op("create", "/srv/app/releases", recursive=True, mode=0o750)
        assert {"/srv", "/srv/app", "/srv/app/releases"} <= agent.directories
        assert await host.directory_op("get_mode", "/srv/app/releases") == 0o750

    @pytest.mark.asyncio
    async def test_create_over_file(self, host, agent):
        """A file in the way raises FileAlreadyExists."""
        agent.files["/tmp/thing"] = b""
        with pytest.raises(FileAlreadyExists):
            await host.directory_op("create", "/tmp/thing")


class TestDirectoryMutations:
    """Tests for delete, move, owner and mode."""

    @pytest.mark.asyncio
    async def test_delete_empty(self, host, agent):
        """An empty directory is removed."""
        agent.directories.add("/tmp/empty")
        assert await host.directory_op("delete", "/tmp/empty") is True
        assert "/tmp/empty" not in agent.directories

    @pytest.mark.asyncio
    async def test_delete_non_empty(self, host, agent):
        """A non-empty directory needs recursive=True."""
        agent.files["/var/www/index.html"] = b""

        with pytest.raises(AgentError) as exc_info:
            await host.directory_op("delete", "/var/www")
        assert exc_info.value.code == "not_empty"

        assert await host.directory_op("delete", "/var/www", recursive=True)
        assert "/var/www/index.html" not in agent.files

    @pytest.mark.asyncio
    async def test_move(self, host, agent):
        """Children move with the directory."""
        agent.files["/var/www/index.html"] = b"hi"
        await host.directory_op("move", "/var/www", "/var/www-old")
        assert agent.files == {"/var/www-old/index.html": b"hi"}
        assert "/var/www" not in agent.directories

    @pytest.mark.asyncio
    async def test_owner_and_mode(self, host):
        """Owner and mode can be changed recursively."""
        assert await host.directory_op("set_owner", "/var/www", "www-data", "www-data", recursive=True)
        owner = await host.directory_op("get_owner", "/var/www")
        assert owner.user_name == "www-data"

        assert await host.directory_op("get_mode", "/var/www") == 0o755
        await host.directory_op("set_mode", "/var/www", 0o750, recursive=True)
        assert await host.directory_op("get_mode", "/var/www") == 0o750

    @pytest.mark.asyncio
    async def test_protected(self, host, agent):
        """Protected paths raise FilePermissionDenied."""
        agent.protected.add("/root")
        with pytest.raises(FilePermissionDenied):
            await host.directory_op("create", "/root")
