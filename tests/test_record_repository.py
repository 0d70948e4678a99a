"""
Tests for RecordRepository and RecordFilter
"""

import pytest

from app.models.record import RecordStatus
from app.services.record_repository import RecordFilter, RecordRepository


@pytest.fixture
def repository(session_factory):
    return RecordRepository(session_factory)


@pytest.fixture
def seeded(repository):
    rows = [
        {"name": "Torikizoku Shibuya", "rating": 3, "genre": "Yakitori"},
        {"name": "Afuri", "rating": 5, "genre": "Ramen"},
        {"name": "Toriki", "rating": 4, "genre": "Yakitori", "status": RecordStatus.WANT_TO_GO},
    ]
    return [repository.create(row) for row in rows]


class TestRecordFilter:

    def test_all_sentinel_and_blank_mean_no_constraint(self):
        assert RecordFilter.from_query(q="  ", genre="All", status="All") == RecordFilter()

    def test_values_are_trimmed(self):
        record_filter = RecordFilter.from_query(q=" tori ", genre="Yakitori", status="WANT_TO_GO")

        assert record_filter.name_contains == "tori"
        assert record_filter.status == RecordStatus.WANT_TO_GO

    def test_unknown_status(self):
        with pytest.raises(ValueError):
            RecordFilter.from_query(status="MAYBE")


class TestRecordRepository:

    def test_find_many_newest_first(self, repository, seeded):
        assert [r.id for r in repository.find_many()] == [r.id for r in reversed(seeded)]

    def test_name_contains_is_case_insensitive(self, repository, seeded):
        names = [r.name for r in repository.find_many(RecordFilter(name_contains="TORI"))]

        assert names == ["Toriki", "Torikizoku Shibuya"]

    def test_filters_combine(self, repository, seeded):
        found = repository.find_many(RecordFilter(genre="Yakitori", status=RecordStatus.VISITED))

        assert [r.name for r in found] == ["Torikizoku Shibuya"]

    def test_update_and_delete(self, repository, seeded):
        updated = repository.update(seeded[1].id, {"memo": "Yuzu shio"})

        assert updated.memo == "Yuzu shio"
        assert repository.delete(seeded[1].id) is True
        assert repository.find_by_id(seeded[1].id) is None
        assert repository.delete(seeded[1].id) is False
        assert repository.update(seeded[1].id, {"memo": "x"}) is None
