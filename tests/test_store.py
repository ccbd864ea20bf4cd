from __future__ import annotations

from datetime import datetime, timedelta, timezone

from codeforge.store import ProjectRepository


def test_save_given_artifacts_when_listed_then_newest_comes_first(repository, artifact_model) -> None:
    # Given
    older = artifact_model
    newer = artifact_model.model_copy(
        update={
            "id": "artifact0002",
            "name": "Weather Card",
            "created_at": artifact_model.created_at + timedelta(hours=2),
        },
    )

    # When
    repository.save(older)
    repository.save(newer)
    items = repository.list()

    # Then
    assert [item.id for item in items] == ["artifact0002", "artifact0001"]
    assert items[1].tags == {"react", "ai-generated"}
    assert items[1].created_at == artifact_model.created_at


def test_list_given_timestamps_in_different_offsets_when_listed_then_ordered_by_instant(
    repository,
    artifact_model,
) -> None:
    # Given
    newer = artifact_model.model_copy(
        update={"id": "newer", "created_at": datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)},
    )
    older = artifact_model.model_copy(
        update={"id": "older", "created_at": datetime(2026, 1, 1, 13, 0, tzinfo=timezone(timedelta(hours=2)))},
    )

    # When
    repository.save(newer)
    repository.save(older)
    items = repository.list()

    # Then
    assert [item.id for item in items] == ["newer", "older"]
    assert items[1].created_at == datetime(2026, 1, 1, 11, 0, tzinfo=timezone.utc)


def test_save_given_dict_without_id_when_saved_then_id_and_timestamp_are_assigned(repository, artifact_model) -> None:
    # Given
    data = artifact_model.model_dump(exclude={"id", "created_at"})

    # When
    saved = repository.save(data)

    # Then
    assert len(saved.id) == 12
    assert saved.created_at is not None
    assert repository.get(saved.id).name == "Todo Board"


def test_save_given_existing_id_when_saved_again_then_row_is_replaced(repository, artifact_model) -> None:
    # Given
    repository.save(artifact_model)

    # When
    repository.save(artifact_model.model_copy(update={"code": "const App = () => null;"}))

    # Then
    assert len(repository.list()) == 1
    assert repository.get("artifact0001").code == "const App = () => null;"


def test_search_given_mixed_case_query_when_searched_then_name_and_description_match(
    repository,
    artifact_model,
) -> None:
    # Given
    repository.save(artifact_model)
    repository.save(
        artifact_model.model_copy(
            update={"id": "artifact0002", "name": "Pricing Page", "description": "Generated from: saas tiers"},
        )
    )

    # When
    by_name = repository.search("todo BOARD")
    by_description = repository.search("SaaS")
    blank = repository.search("   ")
    missing = repository.search("weather")

    # Then
    assert [item.id for item in by_name] == ["artifact0001"]
    assert [item.id for item in by_description] == ["artifact0002"]
    assert len(blank) == 2
    assert missing == []


def test_toggle_star_given_artifact_when_toggled_then_starred_filter_and_stats_follow(
    repository,
    artifact_model,
) -> None:
    # Given
    repository.save(artifact_model)
    repository.save(artifact_model.model_copy(update={"id": "artifact0002", "name": "Other"}))

    # When
    toggled = repository.toggle_star("artifact0001")

    # Then
    assert toggled is True
    assert [item.id for item in repository.list(starred_only=True)] == ["artifact0001"]
    assert repository.search("todo", starred_only=True)[0].starred is True
    assert repository.stats() == {"total": 2, "starred": 1}
    repository.toggle_star("artifact0001")
    assert repository.get("artifact0001").starred is False
    assert repository.toggle_star("missing") is False


def test_rename_given_blank_or_missing_when_renamed_then_nothing_changes(repository, artifact_model) -> None:
    # Given
    repository.save(artifact_model)

    # When
    renamed = repository.rename("artifact0001", "  Kanban  ")
    blank = repository.rename("artifact0001", "   ")
    missing = repository.rename("missing", "Anything")

    # Then
    assert renamed is True
    assert blank is False
    assert missing is False
    assert repository.get("artifact0001").name == "Kanban"


def test_delete_given_artifact_when_deleted_then_it_is_gone(repository, artifact_model) -> None:
    # Given
    repository.save(artifact_model)

    # When
    deleted = repository.delete("artifact0001")
    deleted_again = repository.delete("artifact0001")

    # Then
    assert deleted is True
    assert deleted_again is False
    assert repository.get("artifact0001") is None
    assert repository.stats() == {"total": 0, "starred": 0}


def test_init_db_given_nested_path_when_initialized_twice_then_schema_is_idempotent(tmp_path) -> None:
    # Given
    repository = ProjectRepository(tmp_path / "nested" / "dir" / "projects.db")

    # When
    repository.init_db()
    repository.init_db()

    # Then
    assert repository.db_path.exists()
    assert repository.list() == []
