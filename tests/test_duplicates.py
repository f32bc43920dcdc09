from __future__ import annotations

import pytest

from catalog_admin.bootstrap import CatalogServices
from catalog_admin.services.blobs import image_key
from catalog_admin.services.duplicates import (
    CONTAINMENT_SCORE,
    SHARED_LAST_TOKEN_SCORE,
    DuplicateDetector,
    custom_signature,
    group_signature,
    name_similarity,
)


@pytest.mark.parametrize(
    "left, right, expected",
    [
        ("Tarkovsky", " tarkovsky ", 1.0),
        ("Andrei Tarkovsky", "Tarkovsky", CONTAINMENT_SCORE),
        ("Andrei Tarkovsky", "A. Tarkovsky", SHARED_LAST_TOKEN_SCORE),
        ("Ingmar Bergman", "I Bergman", SHARED_LAST_TOKEN_SCORE),
    ],
)
def test_name_similarity_rules(left: str, right: str, expected: float) -> None:
    assert name_similarity(left, right) == pytest.approx(expected)


def test_name_similarity_falls_back_to_edit_distance() -> None:
    assert name_similarity("Kurosawa", "Kurasawa") == pytest.approx(1 - 1 / 8)
    assert name_similarity("Fellini", "Godard") < 0.5


def test_short_names_do_not_count_as_containment() -> None:
    assert name_similarity("Ray", "Satyajit Ray") < CONTAINMENT_SCORE


def test_signatures() -> None:
    assert group_signature("Tarkovsky", ["films", "directors"]) == "tarkovsky|directors,films"
    assert custom_signature("directors", 3, "writers", 9) == "custom:directors:3:writers:9"


def test_exact_matches_use_case_folding(services: CatalogServices) -> None:
    assert name_similarity("Straße", "STRASSE") == 1.0
    assert group_signature("Straße", ["films"]) == group_signature("STRASSE", ["films"])

    services.catalog.add_entity("films", "Die Straße")
    services.catalog.add_entity("books", "DIE STRASSE")

    report = services.detector.detect()

    (exact,) = report.exact
    assert {entity.type for entity in exact.entities} == {"films", "books"}
    assert exact.signature == "die strasse|books,films"
    assert report.similar == []


def test_detect_exact_and_similar_groups(services: CatalogServices) -> None:
    catalog = services.catalog
    course_id = catalog.add_course("Cinema", r2_dir="cinema")
    lecture_id = catalog.add_lecture(course_id, "Russian cinema", order_in_course=1)

    director_id = catalog.add_entity("directors", "Tarkovsky")
    film_id = catalog.add_entity("films", "tarkovsky")
    catalog.link_entity(lecture_id, "directors", director_id)
    catalog.add_entity("writers", "Fyodor Dostoevsky")
    catalog.add_entity("philosophers", "Dostoevsky")
    catalog.add_entity("painters", "Rembrandt")
    services.blobs.put(image_key("films", film_id), b"jpeg")

    report = services.detector.detect()

    (exact,) = report.exact
    assert exact.name == "Tarkovsky"
    assert exact.match_type == "exact"
    assert [(entity.type, entity.id) for entity in exact.entities] == [
        ("directors", director_id),
        ("films", film_id),
    ]
    assert exact.entities[0].connection_count == 1
    assert exact.entities[1].has_image is True
    assert exact.signature == "tarkovsky|directors,films"

    (similar,) = report.similar
    assert similar.name == "Fyodor Dostoevsky"
    assert {entity.type for entity in similar.entities} == {"writers", "philosophers"}
    assert similar.similarity == pytest.approx(CONTAINMENT_SCORE)


def test_similar_groups_are_transitive(services: CatalogServices) -> None:
    catalog = services.catalog
    catalog.add_entity("directors", "Andrei Tarkovsky")
    catalog.add_entity("directors", "A. Tarkovsky")
    catalog.add_entity("directors", "Andrei Tarkovskiy")

    report = DuplicateDetector(services.catalog, services.blobs).detect()

    assert report.exact == []
    (group,) = report.similar
    assert len(group.entities) == 3


def test_detection_survives_unlistable_bucket(failing_services: CatalogServices) -> None:
    failing_services.catalog.add_entity("books", "Solaris")
    failing_services.catalog.add_entity("films", "Solaris")

    report = failing_services.detector.detect()

    (group,) = report.exact
    assert not any(entity.has_image for entity in group.entities)
