from __future__ import annotations

from typing import List, Tuple

import pytest

from catalog_admin.bootstrap import CatalogServices
from catalog_admin.services.blobs import image_key
from catalog_admin.services.catalog import CatalogRepository
from catalog_admin.services.errors import NotFoundError, ValidationError


def _lectures(catalog: CatalogRepository, count: int) -> List[int]:
    course_id = catalog.add_course("Cinema", r2_dir="cinema")
    return [
        catalog.add_lecture(course_id, f"Lecture {number}", order_in_course=number)
        for number in range(1, count + 1)
    ]


def _linked(catalog: CatalogRepository, entity_type: str, entity_id: int) -> List[Tuple[int, str]]:
    return sorted(
        (link.lecture_id, link.relationship_type)
        for link in catalog.list_links(entity_type, entity_id)
    )


def test_cross_type_merge_moves_links_without_duplicates(services: CatalogServices) -> None:
    catalog = services.catalog
    first, second, third = _lectures(catalog, 3)
    director_id = catalog.add_entity("directors", "Tarkovsky")
    film_id = catalog.add_entity("films", "Tarkovsky")
    catalog.link_entity(first, "directors", director_id)
    catalog.link_entity(second, "directors", director_id)
    catalog.link_entity(second, "films", film_id, "mentioned")
    catalog.link_entity(third, "films", film_id, "mentioned")

    result = services.merger.merge(director_id, "directors", film_id, "films")

    assert result.merged is True
    assert result.relinked == 1
    assert result.dropped == 1
    assert catalog.get_entity("films", film_id) is None
    assert catalog.list_links("films", film_id) == []
    assert _linked(catalog, "directors", director_id) == [
        (first, "discussed"),
        (second, "discussed"),
        (third, "mentioned"),
    ]


def test_same_type_merge_repoints_links(services: CatalogServices) -> None:
    catalog = services.catalog
    first, second, third = _lectures(catalog, 3)
    keep_id = catalog.add_entity("directors", "Andrei Tarkovsky")
    delete_id = catalog.add_entity("directors", "A. Tarkovsky")
    for lecture_id in (first, second):
        catalog.link_entity(lecture_id, "directors", keep_id)
    for lecture_id in (second, third):
        catalog.link_entity(lecture_id, "directors", delete_id)

    result = services.merger.merge(keep_id, "directors", delete_id, "directors")

    assert (result.relinked, result.dropped) == (1, 1)
    assert [lecture for lecture, _ in _linked(catalog, "directors", keep_id)] == [
        first,
        second,
        third,
    ]
    assert catalog.connection_counts("directors") == {keep_id: 3}


def test_merge_is_idempotent(services: CatalogServices) -> None:
    catalog = services.catalog
    keep_id = catalog.add_entity("books", "Solaris")
    delete_id = catalog.add_entity("books", "Solaris ")

    assert services.merger.merge(keep_id, "books", delete_id, "books").merged is True
    again = services.merger.merge(keep_id, "books", delete_id, "books")

    assert again.merged is False
    assert catalog.get_entity("books", keep_id) is not None


def test_merge_rejects_self_and_missing_keeper(services: CatalogServices) -> None:
    catalog = services.catalog
    entity_id = catalog.add_entity("painters", "Rublev")

    with pytest.raises(ValidationError):
        services.merger.merge(entity_id, "painters", entity_id, "painters")
    with pytest.raises(NotFoundError):
        services.merger.merge(entity_id + 50, "painters", entity_id, "painters")
    assert catalog.get_entity("painters", entity_id) is not None


def test_merge_into_course_drops_links(services: CatalogServices) -> None:
    catalog = services.catalog
    (lecture_id,) = _lectures(catalog, 1)
    course_id = catalog.add_course("Mirror", r2_dir="mirror")
    film_id = catalog.add_entity("films", "Mirror")
    catalog.link_entity(lecture_id, "films", film_id)

    result = services.merger.merge(course_id, "courses", film_id, "films")

    assert result.merged is True
    assert result.dropped == 1
    assert catalog.get_entity("films", film_id) is None


def test_merge_copies_image_only_when_keeper_has_none(services: CatalogServices) -> None:
    catalog = services.catalog
    blobs = services.blobs
    keep_id = catalog.add_entity("writers", "Tolstoy")
    delete_id = catalog.add_entity("writers", "Leo Tolstoy")
    blobs.put(image_key("writers", delete_id), b"loser")

    result = services.merger.merge(keep_id, "writers", delete_id, "writers")

    assert result.image_copied is True
    assert blobs.get(image_key("writers", keep_id)) == b"loser"
    assert not blobs.exists(image_key("writers", delete_id))

    other_id = catalog.add_entity("writers", "L. Tolstoy")
    blobs.put(image_key("writers", other_id), b"other")
    result = services.merger.merge(keep_id, "writers", other_id, "writers")

    assert result.image_copied is False
    assert blobs.get(image_key("writers", keep_id)) == b"loser"
    assert not blobs.exists(image_key("writers", other_id))


def test_merge_succeeds_when_bucket_fails(failing_services: CatalogServices) -> None:
    catalog = failing_services.catalog
    keep_id = catalog.add_entity("films", "Stalker")
    delete_id = catalog.add_entity("films", "Stalker (1979)")
    failing_services.blobs.put(image_key("films", delete_id), b"jpeg")

    result = failing_services.merger.merge(keep_id, "films", delete_id, "films")

    assert result.merged is True
    assert result.image_copied is False
    assert catalog.get_entity("films", delete_id) is None


def test_reclassify_moves_entity_links_and_image(services: CatalogServices) -> None:
    catalog = services.catalog
    first, second = _lectures(catalog, 2)
    writer_id = catalog.add_entity("writers", "Nietzsche", description="Philologist")
    catalog.link_entity(first, "writers", writer_id)
    catalog.link_entity(second, "writers", writer_id, "mentioned")
    services.blobs.put(image_key("writers", writer_id), b"portrait")

    new_id = services.merger.reclassify(writer_id, "writers", "philosophers")

    assert catalog.get_entity("writers", writer_id) is None
    moved = catalog.require_entity("philosophers", new_id)
    assert moved.display_name == "Nietzsche"
    assert moved.description == "Philologist"
    assert _linked(catalog, "philosophers", new_id) == [
        (first, "discussed"),
        (second, "mentioned"),
    ]
    assert services.blobs.get(image_key("philosophers", new_id)) == b"portrait"
    assert not services.blobs.exists(image_key("writers", writer_id))


def test_reclassify_validation(services: CatalogServices) -> None:
    with pytest.raises(ValidationError):
        services.merger.reclassify(1, "films", "films")
    with pytest.raises(NotFoundError):
        services.merger.reclassify(404, "films", "books")
    assert services.catalog.list_entities("books") == []


def test_merging_duplicate_director_keeps_distinct_links(services: CatalogServices) -> None:
    catalog = services.catalog
    lectures = _lectures(catalog, 4)
    keep_id = catalog.add_entity("directors", "Tarkovsky")
    delete_id = catalog.add_entity("directors", "Tarkovsky")
    for lecture_id in lectures[:3]:
        catalog.link_entity(lecture_id, "directors", keep_id)
    catalog.link_entity(lectures[0], "directors", delete_id, "mentioned")
    catalog.link_entity(lectures[3], "directors", delete_id)

    services.merger.merge(keep_id, "directors", delete_id, "directors")

    assert catalog.get_entity("directors", delete_id) is None
    links = _linked(catalog, "directors", keep_id)
    assert [lecture for lecture, _ in links] == sorted(lectures)
    assert links[0] == (lectures[0], "discussed")

    again = services.merger.merge(keep_id, "directors", delete_id, "directors")
    assert again.merged is False
    assert _linked(catalog, "directors", keep_id) == links
