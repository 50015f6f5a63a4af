"""
SiteSurvey Backend — Drive Maintenance CLI Tests
==================================================

What we test:
    ✅ setup prints the new folder id
    ✅ verify exits 1 when any child is not publicly readable
    ✅ fix only counts children that actually needed a permission
    ✅ run() dispatches subcommands to a freshly built client
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from scripts import drive_permissions


@pytest.fixture
def client():
    drive = MagicMock()
    drive.list_children = AsyncMock(return_value=[{"id": "F1", "name": "a.jpg"}, {"id": "F2", "name": "b.jpg"}])
    drive.is_public = AsyncMock(side_effect=lambda file_id: file_id == "F1")
    drive.ensure_public = AsyncMock(side_effect=lambda file_id: file_id == "F2")
    drive.create_root_folder = AsyncMock(
        return_value={"id": "ROOT", "name": "Uploads", "webViewLink": "https://drive.google.com/drive/folders/ROOT"}
    )
    return drive


class TestCommands:

    @pytest.mark.asyncio
    async def test_setup(self, client, capsys):
        assert await drive_permissions.setup(client, "Uploads") == 0
        client.create_root_folder.assert_awaited_once_with("Uploads")
        assert "GOOGLE_DRIVE_FOLDER_ID=ROOT" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_verify_reports_private_children(self, client, capsys):
        assert await drive_permissions.verify(client) == 1
        out = capsys.readouterr().out
        assert "2 items, 1 not publicly readable" in out
        assert "F2" in out

    @pytest.mark.asyncio
    async def test_verify_all_public(self, client):
        client.is_public = AsyncMock(return_value=True)
        assert await drive_permissions.verify(client) == 0

    @pytest.mark.asyncio
    async def test_fix_counts_granted(self, client, capsys):
        assert await drive_permissions.fix(client) == 0
        assert client.ensure_public.await_count == 2
        assert "Granted public read on 1 items" in capsys.readouterr().out


class TestRun:

    @pytest.mark.asyncio
    async def test_run_dispatches_setup_with_default_name(self, client):
        with patch.object(drive_permissions, "DriveStorageClient", return_value=client):
            assert await drive_permissions.run(["setup"]) == 0
        client.create_root_folder.assert_awaited_once_with("Site Survey Uploads")

    @pytest.mark.asyncio
    async def test_run_requires_a_command(self):
        with pytest.raises(SystemExit):
            await drive_permissions.run([])
