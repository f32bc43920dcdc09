from __future__ import annotations

import pytest

from catalog_admin.config import AppConfig
from catalog_admin.services.catalog import CatalogRepository, resolve_entity_type
from catalog_admin.services.errors import NotFoundError, StoreFailure, ValidationError


def _lecture(repository: CatalogRepository, order: int = 1) -> int:
    course = repository.find_entity_by_name("courses", "Cinema")
    course_id = course.id if course else repository.add_course("Cinema", r2_dir="cinema")
    return repository.add_lecture(course_id, f"Lecture {order}", order_in_course=order)


def test_entity_crud_cycle(temp_config: AppConfig) -> None:
    repository = CatalogRepository(temp_config)

    entity_id = repository.add_entity("directors", "  Andrei Tarkovsky ", hebrew_name="טרקובסקי")
    record = repository.require_entity("directors", entity_id)
    assert record.display_name == "Andrei Tarkovsky"
    assert record.hebrew_name == "טרקובסקי"
    assert record.description is None

    repository.update_entity("directors", entity_id, description="Soviet filmmaker")
    repository.update_entity("directors", entity_id, hebrew_name=None)
    record = repository.require_entity("directors", entity_id)
    assert record.description == "Soviet filmmaker"
    assert record.hebrew_name is None

    assert repository.delete_entity("directors", entity_id) == 1
    assert repository.get_entity("directors", entity_id) is None
    assert repository.delete_entity("directors", entity_id) == 0


def test_entity_validation(temp_config: AppConfig) -> None:
    repository = CatalogRepository(temp_config)
    entity_id = repository.add_entity("films", "Stalker")

    with pytest.raises(ValidationError):
        repository.add_entity("films", "   ")
    with pytest.raises(ValidationError):
        repository.update_entity("films", entity_id)
    with pytest.raises(ValidationError):
        repository.update_entity("films", entity_id, name="")
    with pytest.raises(NotFoundError):
        repository.update_entity("films", entity_id + 100, name="Solaris")
    with pytest.raises(ValidationError):
        resolve_entity_type("sculptors")


def test_link_entity_upserts_relationship(temp_config: AppConfig) -> None:
    repository = CatalogRepository(temp_config)
    lecture_id = _lecture(repository)
    director_id = repository.add_entity("directors", "Bergman")

    first = repository.link_entity(lecture_id, "directors", director_id)
    second = repository.link_entity(lecture_id, "directors", director_id, "mentioned")

    assert first == second
    links = repository.list_links("directors", director_id)
    assert [(link.lecture_id, link.relationship_type) for link in links] == [
        (lecture_id, "mentioned")
    ]
    assert repository.connection_counts("directors") == {director_id: 1}

    with pytest.raises(ValidationError):
        repository.link_entity(lecture_id, "directors", director_id, "cited")
    with pytest.raises(ValidationError):
        repository.link_entity(lecture_id, "courses", 1)


def test_list_lecture_links_sorted_by_name(temp_config: AppConfig) -> None:
    repository = CatalogRepository(temp_config)
    lecture_id = _lecture(repository)
    for name in ("zhang yimou", "Akira Kurosawa", "Bresson"):
        repository.link_entity(lecture_id, "directors", repository.add_entity("directors", name))

    rows = repository.list_lecture_links(lecture_id, "directors")

    assert [entity.display_name for _, entity in rows] == [
        "Akira Kurosawa",
        "Bresson",
        "zhang yimou",
    ]
    junction, _ = rows[0]
    repository.set_relationship_type("directors", junction.id, "mentioned")
    assert repository.list_lecture_links(lecture_id, "directors")[0][0].relationship_type == "mentioned"
    with pytest.raises(NotFoundError):
        repository.set_relationship_type("directors", 9999, "mentioned")


def test_insert_links_rejects_duplicate_pair(temp_config: AppConfig) -> None:
    repository = CatalogRepository(temp_config)
    lecture_id = _lecture(repository)
    book_id = repository.add_entity("books", "Sculpting in Time")
    repository.link_entity(lecture_id, "books", book_id)

    with pytest.raises(StoreFailure):
        repository.insert_links("books", book_id, [(lecture_id, "discussed")])


def test_transaction_rolls_back_on_error(temp_config: AppConfig) -> None:
    repository = CatalogRepository(temp_config)

    with pytest.raises(NotFoundError):
        with repository.transaction() as conn:
            repository.add_entity("painters", "Rublev", connection=conn)
            raise NotFoundError("abort")

    assert repository.list_entities("painters") == []


def test_backups_are_listed_newest_first(temp_config: AppConfig) -> None:
    repository = CatalogRepository(temp_config)
    first = repository.add_backup(
        original_id=1,
        entity_type="writers",
        name="Tolstoy",
        hebrew_name=None,
        description=None,
        junction_data=[{"id": 1, "lecture_id": 3, "writer_id": 1, "relationship_type": "discussed"}],
        has_image=True,
    )
    second = repository.add_backup(
        original_id=2,
        entity_type="writers",
        name="Chekhov",
        hebrew_name=None,
        description=None,
        junction_data=[],
        has_image=False,
    )

    backups = repository.list_backups()
    assert [backup.id for backup in backups] == [second, first]
    restored = repository.get_backup(first)
    assert restored is not None
    assert restored.has_image is True
    assert restored.junction_data[0]["writer_id"] == 1
    assert repository.delete_backup(first) == 1
    assert repository.get_backup(first) is None
