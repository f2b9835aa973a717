import logging

import pytest
from pymongo.errors import PyMongoError

import reviews
import tours
from conftest import auth_headers, tour_payload
from errors import ConflictError, NotFoundError, ValidationError


@pytest.fixture
def tour(db):
    return tours.create_tour(db, tour_payload())


def ratings(db, tour):
    doc = db["tour"].find_one()
    return doc["ratings_quantity"], doc["ratings_average"]


def test_create_reviews_updates_tour_ratings(db, tour, make_user):
    reviews.create_review(db, tour["id"], make_user()["id"], "Good", 4)
    assert ratings(db, tour) == (1, 4.0)

    reviews.create_review(db, tour["id"], make_user()["id"], "Great", 5)
    assert ratings(db, tour) == (2, 4.5)


def test_average_is_rounded_on_recompute(db, tour, make_user):
    for rating in (5, 5, 4):
        reviews.create_review(db, tour["id"], make_user()["id"], "Fine", rating)
    assert ratings(db, tour) == (3, 4.7)


def test_one_review_per_user_and_tour(db, tour, make_user):
    user = make_user()
    reviews.create_review(db, tour["id"], user["id"], "First", 3)

    with pytest.raises(ConflictError):
        reviews.create_review(db, tour["id"], user["id"], "Second", 5)
    assert ratings(db, tour) == (1, 3.0)


def test_update_recomputes(db, tour, make_user):
    review = reviews.create_review(db, tour["id"], make_user()["id"], "Okay", 2)
    reviews.create_review(db, tour["id"], make_user()["id"], "Good", 4)

    updated = reviews.update_review(db, review["id"], {"rating": 5})

    assert updated["rating"] == 5
    assert ratings(db, tour) == (2, 4.5)


def test_deleting_last_review_resets_to_default(db, tour, make_user):
    review = reviews.create_review(db, tour["id"], make_user()["id"], "Bad", 1)
    assert ratings(db, tour) == (1, 1.0)

    reviews.delete_review(db, review["id"])

    assert ratings(db, tour) == (0, 4.5)
    with pytest.raises(NotFoundError):
        reviews.find_review(db, review["id"])


def test_review_validation(db, tour, make_user):
    user = make_user()
    with pytest.raises(ValidationError) as exc:
        reviews.create_review(db, tour["id"], user["id"], "", 6)
    assert {"review", "rating"} <= set(exc.value.errors)

    with pytest.raises(NotFoundError):
        reviews.create_review(db, "5c88fa8cf4afda39709c2951", user["id"], "Nice", 4)


def test_reviews_populate_user_name_and_photo_only(db, tour, make_user):
    user = make_user(name="Lourdes Browning")
    reviews.create_review(db, tour["id"], user["id"], "Lovely", 5)

    review = reviews.find_reviews(db, {"tour": tour["id"]})[0]

    assert review["user"] == {"id": user["id"], "name": "Lourdes Browning", "photo": "default.jpg"}
    assert review["tour"] == tour["id"]


def test_recompute_failure_does_not_fail_the_write(db, tour, make_user, monkeypatch, caplog):
    def broken(*args, **kwargs):
        raise PyMongoError("connection lost")

    monkeypatch.setattr(tours, "set_ratings", broken)
    with caplog.at_level(logging.ERROR, logger="reviews"):
        review = reviews.create_review(db, tour["id"], make_user()["id"], "Still saved", 5)

    assert review["review"] == "Still saved"
    assert "Could not recompute ratings" in caplog.text
    assert ratings(db, tour) == (0, 4.5)


# HTTP

def test_nested_review_routes(client, db, tour, make_user):
    user = make_user()

    res = client.post(f"/api/v1/tours/{tour['id']}/reviews", json={"review": "Wonderful", "rating": 5},
                      headers=auth_headers(user))
    assert res.status_code == 201
    assert res.json()["data"]["data"]["user"]["id"] == user["id"]

    res = client.get(f"/api/v1/tours/{tour['id']}/reviews", headers=auth_headers(user))
    assert res.json()["results"] == 1

    res = client.post(f"/api/v1/tours/{tour['id']}/reviews", json={"review": "Again", "rating": 1},
                      headers=auth_headers(user))
    assert res.status_code == 409

    res = client.get(f"/api/v1/tours/{tour['id']}")
    assert res.json()["data"]["data"]["ratings_average"] == 5.0


def test_only_users_write_reviews(client, tour, make_user):
    res = client.post("/api/v1/reviews", json={"tour": tour["id"], "review": "Nice", "rating": 4},
                      headers=auth_headers(make_user(role="guide")))
    assert res.status_code == 403


def test_users_change_only_their_own_reviews(client, db, tour, make_user):
    author = make_user()
    other = make_user()
    admin = make_user(role="admin")
    review = reviews.create_review(db, tour["id"], author["id"], "Mine", 3)

    res = client.patch(f"/api/v1/reviews/{review['id']}", json={"rating": 1}, headers=auth_headers(other))
    assert res.status_code == 403

    res = client.patch(f"/api/v1/reviews/{review['id']}", json={"rating": 5}, headers=auth_headers(author))
    assert res.status_code == 200

    res = client.delete(f"/api/v1/reviews/{review['id']}", headers=auth_headers(admin))
    assert res.status_code == 204
    assert ratings(db, tour) == (0, 4.5)
