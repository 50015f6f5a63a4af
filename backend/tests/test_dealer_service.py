"""
SiteSurvey Backend — Dealer Service Tests
===========================================

What:  DealerService against a real SQLite session and the in-memory storage
       fake; mocked sessions only where SQLite cannot reproduce the case
       (driver errors, Postgres-only SQL).

What we test:
    ✅ Create with/without logo, reps normalization, duplicate business key
    ✅ Insert failure after upload discards the fresh logo
    ✅ Partial update; logo replace ordering; failed upload leaves the row
    ✅ Delete removes the logo; lookups by surrogate id and business key
    ✅ Logo upload URL: dealer must exist, path under dealers/<dealer_id>/
    ✅ Search: ILIKE on name, exact rep element match, newest first, pagination
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError, OperationalError

from app.exceptions import ConflictError, DatabaseError, NotFoundError, UploadFailedError
from app.models.survey import Survey
from app.schemas.dealer import DealerCreate, DealerSearchParams, DealerUpdate
from app.services.dealer_service import DealerService
from app.services.storage_base import DirectUpload
from app.services.upload_orchestrator import UploadOrchestrator
from conftest import FakeStorageClient


@pytest.fixture
def service(orchestrator):
    return DealerService(orchestrator)


class TestDealerCreate:

    @pytest.mark.asyncio
    async def test_create_with_logo(self, service, db_session, fake_storage, make_file):
        data = DealerCreate(dealer_id="D1", name="Acme Solar", reps=["Bob", " Alice "])

        dealer = await service.create(db_session, data, logo=make_file("logo.png"))

        assert dealer.dealer_id == "D1"
        assert dealer.reps == ["Bob", "Alice"]
        assert dealer.logo.startswith("https://files.example.com/dealers/D1/")
        assert len(fake_storage.objects) == 1

    @pytest.mark.asyncio
    async def test_create_without_logo_and_reps(self, service, db_session, fake_storage):
        dealer = await service.create(db_session, DealerCreate(dealer_id="D2", name="Beta", reps=[]))

        assert dealer.logo is None
        assert dealer.reps == [""]
        assert fake_storage.put_calls == []

    @pytest.mark.asyncio
    async def test_duplicate_dealer_id_conflicts_before_upload(self, service, db_session, fake_storage, make_file):
        await service.create(db_session, DealerCreate(dealer_id="D1", name="Acme"))

        with pytest.raises(ConflictError, match="already exists"):
            await service.create(db_session, DealerCreate(dealer_id="D1", name="Other"), logo=make_file())
        assert fake_storage.put_calls == []

    @pytest.mark.asyncio
    async def test_integrity_error_discards_uploaded_logo(self, mock_db_session, make_file):
        orchestrator = MagicMock()
        orchestrator.ingest = AsyncMock(return_value="https://files.example.com/dealers/D1/x.png")
        orchestrator.discard = AsyncMock()
        mock_db_session.execute.return_value.scalar_one_or_none.return_value = None
        mock_db_session.flush.side_effect = IntegrityError("INSERT", {}, Exception("duplicate key"))

        with pytest.raises(ConflictError):
            await DealerService(orchestrator).create(
                mock_db_session, DealerCreate(dealer_id="D1", name="Acme"), logo=make_file()
            )
        orchestrator.discard.assert_awaited_once_with("https://files.example.com/dealers/D1/x.png")

    @pytest.mark.asyncio
    async def test_other_database_error_is_generic(self, mock_db_session):
        orchestrator = MagicMock()
        orchestrator.discard = AsyncMock()
        mock_db_session.execute.return_value.scalar_one_or_none.return_value = None
        mock_db_session.flush.side_effect = OperationalError("INSERT", {}, Exception("server gone"))

        with pytest.raises(DatabaseError) as exc_info:
            await DealerService(orchestrator).create(mock_db_session, DealerCreate(dealer_id="D1", name="Acme"))
        assert "server gone" not in exc_info.value.message


class TestDealerUpdateDelete:

    @pytest.mark.asyncio
    async def test_partial_update_keeps_other_fields(self, service, db_session):
        created = await service.create(db_session, DealerCreate(dealer_id="D1", name="Acme", reps=["Bob"]))

        updated = await service.update(db_session, created.system_id, DealerUpdate(name="Acme Energy"))

        assert updated.name == "Acme Energy"
        assert updated.reps == ["Bob"]
        assert updated.dealer_id == "D1"

    @pytest.mark.asyncio
    async def test_logo_replaced_new_before_old(self, service, db_session, fake_storage, make_file):
        created = await service.create(
            db_session, DealerCreate(dealer_id="D1", name="Acme"), logo=make_file("old.png")
        )
        fake_storage.events.clear()

        updated = await service.update(db_session, created.system_id, DealerUpdate(), logo=make_file("new.png"))

        assert updated.logo != created.logo
        assert fake_storage.events[0].startswith("put:dealers/D1/")
        assert fake_storage.events[1] == f"delete:{created.logo}"

    @pytest.mark.asyncio
    async def test_failed_logo_upload_leaves_dealer_unchanged(self, db_session, make_file):
        storage = FakeStorageClient()
        service = DealerService(UploadOrchestrator(storage=storage))
        created = await service.create(db_session, DealerCreate(dealer_id="D1", name="Acme"), logo=make_file())
        storage.fail_when = lambda path, content: True

        with pytest.raises(UploadFailedError):
            await service.update(db_session, created.system_id, DealerUpdate(name="New"), logo=make_file())

        current = await service.find_one(db_session, created.system_id)
        assert current.logo == created.logo
        assert current.name == "Acme"
        assert storage.deleted == []

    @pytest.mark.asyncio
    async def test_update_unknown_dealer(self, service, db_session):
        with pytest.raises(NotFoundError):
            await service.update(db_session, uuid4(), DealerUpdate(name="x"))

    @pytest.mark.asyncio
    async def test_delete_removes_logo_and_row(self, service, db_session, fake_storage, make_file):
        created = await service.create(db_session, DealerCreate(dealer_id="D1", name="Acme"), logo=make_file())

        result = await service.delete(db_session, created.system_id)

        assert result.deleted_dealer.dealer_id == "D1"
        assert fake_storage.deleted == [created.logo]
        with pytest.raises(NotFoundError):
            await service.find_one(db_session, created.system_id)


class TestLogoUploadUrl:

    @pytest.mark.asyncio
    async def test_issues_url_under_dealer_prefix(self, service, db_session, fake_storage):
        created = await service.create(db_session, DealerCreate(dealer_id="D1", name="Acme"))
        fake_storage.create_upload_url = AsyncMock(
            side_effect=lambda path, content_type: DirectUpload(
                f"https://signed.example.com/{path}", f"https://files.example.com/{path}", path, 900
            )
        )

        result = await service.create_logo_upload_url(db_session, created.system_id, "image/png")

        assert result.image_url.startswith("https://files.example.com/dealers/D1/")
        assert result.image_url.endswith(".png")
        assert result.upload_url.startswith("https://signed.example.com/dealers/D1/")
        assert result.expires_in == 900
        current = await service.find_one(db_session, created.system_id)
        assert current.logo is None

    @pytest.mark.asyncio
    async def test_unknown_dealer(self, service, db_session, fake_storage):
        fake_storage.create_upload_url = AsyncMock()
        with pytest.raises(NotFoundError):
            await service.create_logo_upload_url(db_session, uuid4())
        fake_storage.create_upload_url.assert_not_awaited()


class TestDealerQueries:

    @pytest.mark.asyncio
    async def test_find_all_newest_first(self, service, db_session):
        await service.create(db_session, DealerCreate(dealer_id="OLD", name="Old"))
        await service.create(db_session, DealerCreate(dealer_id="NEW", name="New"))

        dealers = await service.find_all(db_session)

        assert [d.dealer_id for d in dealers] == ["NEW", "OLD"]

    @pytest.mark.asyncio
    async def test_find_by_dealer_id_with_surveys(self, service, db_session):
        await service.create(db_session, DealerCreate(dealer_id="D1", name="Acme"))
        now = datetime.now(timezone.utc)
        db_session.add_all([
            Survey(dealer_id="D1", rep_name="Bob", customer_name="Ann", customer_address="1 Main St",
                   response_data={}, created_at=now - timedelta(days=1)),
            Survey(dealer_id="D1", rep_name="Bob", customer_name="Ben", customer_address="2 Main St",
                   response_data={}, created_at=now),
        ])
        await db_session.flush()

        everything = await service.find_by_dealer_id(db_session, "D1")
        only_ann = await service.find_by_dealer_id(db_session, "D1", customer_name="Ann")

        assert [s.customer_name for s in everything.surveys] == ["Ben", "Ann"]
        assert [s.customer_name for s in only_ann.surveys] == ["Ann"]
        assert only_ann.surveys[0].dealer_name == "Acme"

    @pytest.mark.asyncio
    async def test_numeric_key_resolves_through_survey(self, service, db_session):
        await service.create(db_session, DealerCreate(dealer_id="D1", name="Acme"))
        survey = Survey(dealer_id="D1", rep_name="Bob", customer_name="Ann",
                        customer_address="1 Main St", response_data={})
        db_session.add(survey)
        await db_session.flush()

        dealer = await service.find_by_dealer_id(db_session, str(survey.id))

        assert dealer.dealer_id == "D1"

    @pytest.mark.asyncio
    async def test_find_by_dealer_id_unknown_customer(self, service, db_session):
        await service.create(db_session, DealerCreate(dealer_id="D1", name="Acme"))
        with pytest.raises(NotFoundError):
            await service.find_by_dealer_id(db_session, "D1", customer_name="Nobody")

    @pytest.mark.asyncio
    async def test_search_by_name(self, service, db_session):
        await service.create(db_session, DealerCreate(dealer_id="D1", name="Acme Solar"))
        await service.create(db_session, DealerCreate(dealer_id="D2", name="Beta Roofing"))

        page = await service.search(db_session, DealerSearchParams(search="acme"))

        assert [d.dealer_id for d in page.data] == ["D1"]
        assert page.meta.total == 1

    @pytest.mark.asyncio
    async def test_search_by_rep_matches_whole_element(self, service, db_session):
        await service.create(db_session, DealerCreate(dealer_id="D1", name="Acme", reps=["Alex", "Bob"]))
        await service.create(db_session, DealerCreate(dealer_id="D2", name="Beta", reps=["Alexander"]))

        page = await service.search(db_session, DealerSearchParams(rep_name="Alex"))
        combined = await service.search(db_session, DealerSearchParams(search="beta", rep_name="Alex"))

        assert [d.dealer_id for d in page.data] == ["D1"]
        assert page.meta.total == 1
        assert combined.data == []

    @pytest.mark.asyncio
    async def test_search_sql_uses_ilike_and_any(self, mock_db_session):
        count_result = MagicMock()
        count_result.scalar.return_value = 25
        rows_result = MagicMock()
        rows_result.scalars.return_value.all.return_value = []
        mock_db_session.execute.side_effect = [count_result, rows_result]

        page = await DealerService(MagicMock()).search(
            mock_db_session, DealerSearchParams(search="acme", rep_name="Bob", page=3, limit=10)
        )

        compiled = mock_db_session.execute.call_args_list[1].args[0].compile(dialect=postgresql.dialect())
        sql = str(compiled)
        assert "ILIKE" in sql
        assert "= ANY (dealers.reps)" in sql
        assert "ORDER BY dealers.created_at DESC" in sql
        assert 20 in compiled.params.values()
        assert page.meta.total_pages == 3
