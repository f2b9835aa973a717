from datetime import datetime, timezone

import pytest

import reviews
import tours
from conftest import auth_headers, tour_payload
from errors import ConflictError, NotFoundError, ValidationError


def test_create_tour_derives_slug_and_defaults(db):
    tour = tours.create_tour(db, tour_payload(name="  The Sea Explorer  "))

    assert tour["name"] == "The Sea Explorer"
    assert tour["slug"] == "the-sea-explorer"
    assert tour["ratings_average"] == 4.5
    assert tour["ratings_quantity"] == 0
    assert tour["secret_tour"] is False
    assert tour["duration_weeks"] == pytest.approx(5 / 7)
    assert "created_at" not in tour


@pytest.mark.parametrize("name, slug", [
    ("Rock & Roll Mountains", "rock-and-roll-mountains"),
    ("Café Über Alpen Tour", "cafe-uber-alpen-tour"),
    ("The Northern Lights!", "the-northern-lights"),
])
def test_slug_handles_symbols_and_accents(db, name, slug):
    assert tours.create_tour(db, tour_payload(name=name))["slug"] == slug


def test_slug_is_not_recomputed_on_update(db):
    tour = tours.create_tour(db, tour_payload())
    updated = tours.update_tour(db, tour["id"], {"name": "The Forest Wanderer"})

    assert updated["name"] == "The Forest Wanderer"
    assert updated["slug"] == "the-forest-hiker"


def test_create_reports_every_invalid_field(db):
    with pytest.raises(ValidationError) as exc:
        tours.create_tour(db, {"name": "Too short", "difficulty": "extreme", "price": 100, "price_discount": 150})

    errors = exc.value.errors
    for field in ("name", "duration", "max_group_size", "difficulty", "summary", "image_cover", "price_discount"):
        assert field in errors


def test_price_discount_checked_on_create_only(db):
    with pytest.raises(ValidationError) as exc:
        tours.create_tour(db, tour_payload(price=400, price_discount=400))
    assert "price_discount" in exc.value.errors

    tour = tours.create_tour(db, tour_payload(price=400, price_discount=100))
    updated = tours.update_tour(db, tour["id"], {"price_discount": 900})
    assert updated["price_discount"] == 900


@pytest.mark.parametrize("given, stored", [(4.666, 4.7), (4.65, 4.7), (4.44, 4.4), (3, 3.0)])
def test_ratings_average_is_rounded(db, given, stored):
    tour = tours.create_tour(db, tour_payload(ratings_average=given))
    assert tour["ratings_average"] == stored

    updated = tours.update_tour(db, tour["id"], {"ratings_average": given + 0.001})
    assert updated["ratings_average"] == stored


def test_ratings_average_out_of_range(db):
    with pytest.raises(ValidationError) as exc:
        tours.create_tour(db, tour_payload(ratings_average=5.5))
    assert exc.value.errors["ratings_average"] == "Rating must be below 5.0"


def test_update_revalidates_given_fields(db):
    tour = tours.create_tour(db, tour_payload())
    with pytest.raises(ValidationError) as exc:
        tours.update_tour(db, tour["id"], {"difficulty": "extreme"})
    assert "difficulty" in exc.value.errors


def test_duplicate_name_conflicts(db):
    tours.create_tour(db, tour_payload())
    with pytest.raises(ConflictError):
        tours.create_tour(db, tour_payload())


def test_secret_tours_hidden_unless_asked(db):
    visible = tours.create_tour(db, tour_payload())
    secret = tours.create_tour(db, tour_payload(name="The Secret Valley", secret_tour=True))

    assert [t["id"] for t in tours.find_tours(db)] == [visible["id"]]
    with pytest.raises(NotFoundError):
        tours.find_tour(db, secret["id"])

    assert tours.find_tour(db, secret["id"], include_secret=True)["name"] == "The Secret Valley"
    assert len(tours.find_tours(db, include_secret=True)) == 2
    # filtering on the flag itself does not get around the default
    assert tours.find_tours(db, {"secret_tour": True}) == []


def test_guides_are_populated_without_private_fields(db, make_user):
    guide = make_user(role="lead-guide", name="Steven Miller")
    db["user"].update_one({"email": guide["email"]}, {"$set": {"password_changed_at": datetime.now(timezone.utc)}})

    tour = tours.create_tour(db, tour_payload(guides=[guide["id"]]))
    fetched = tours.find_tour(db, tour["id"])

    assert len(fetched["guides"]) == 1
    embedded = fetched["guides"][0]
    assert embedded["name"] == "Steven Miller"
    assert embedded["role"] == "lead-guide"
    for hidden in ("password_hash", "password_changed_at", "active", "__v"):
        assert hidden not in embedded


def test_guides_must_have_a_guide_role(db, make_user):
    regular = make_user(role="user")
    with pytest.raises(ValidationError) as exc:
        tours.create_tour(db, tour_payload(guides=[regular["id"]]))
    assert "guides" in exc.value.errors


def test_reviews_joined_on_single_fetch_only(db, make_user):
    tour = tours.create_tour(db, tour_payload())
    reviews.create_review(db, tour["id"], make_user()["id"], "Amazing!", 5)

    single = tours.find_tour(db, tour["id"])
    assert len(single["reviews"]) == 1
    assert "reviews" not in tours.find_tours(db)[0]


def test_delete_tour_keeps_reviews(db, make_user):
    tour = tours.create_tour(db, tour_payload())
    reviews.create_review(db, tour["id"], make_user()["id"], "Nice", 4)

    tours.delete_tour(db, tour["id"])

    with pytest.raises(NotFoundError):
        tours.find_tour(db, tour["id"])
    assert db["review"].count_documents({}) == 1


def test_invalid_id_is_a_validation_error(db):
    with pytest.raises(ValidationError):
        tours.find_tour(db, "not-an-id")


def test_tour_stats_groups_by_difficulty(db):
    tours.create_tour(db, tour_payload(price=397))
    tours.create_tour(db, tour_payload(name="The Park Camper", price=597, ratings_average=4.7))
    tours.create_tour(db, tour_payload(name="The Sea Explorer", price=497, difficulty="medium", ratings_average=4.8))
    tours.create_tour(db, tour_payload(name="The Snow Adventurer", price=997, difficulty="difficult", ratings_average=4.0))
    tours.create_tour(db, tour_payload(name="The Secret Valley", price=100, ratings_average=4.9, secret_tour=True))

    stats = {s["id"]: s for s in tours.tour_stats(db)}

    assert set(stats) == {"EASY", "MEDIUM"}
    assert stats["EASY"]["num_tours"] == 2
    assert stats["EASY"]["avg_price"] == pytest.approx(497)
    assert stats["EASY"]["min_price"] == 397
    assert stats["EASY"]["max_price"] == 597
    assert stats["MEDIUM"]["num_tours"] == 1
    assert stats["MEDIUM"]["avg_rating"] == pytest.approx(4.8)


def test_monthly_plan_counts_starts_within_the_year(db):
    tours.create_tour(db, tour_payload(start_dates=[
        "2020-12-31T23:00:00Z", "2021-04-25T09:00:00Z", "2021-07-20T09:00:00Z",
    ]))
    tours.create_tour(db, tour_payload(name="The Sea Explorer", start_dates=[
        "2021-07-19T09:00:00Z", "2022-01-05T09:00:00Z",
    ]))
    tours.create_tour(db, tour_payload(name="The Secret Valley", secret_tour=True, start_dates=["2021-07-01T09:00:00Z"]))

    plan = tours.monthly_plan(db, 2021)

    assert [p["month"] for p in plan] == [7, 4]
    assert plan[0]["num_tour_starts"] == 2
    assert sorted(plan[0]["tours"]) == ["The Forest Hiker", "The Sea Explorer"]
    assert plan[1]["tours"] == ["The Forest Hiker"]
    assert [p["month"] for p in tours.monthly_plan(db, 2022)] == [1]


@pytest.mark.parametrize("latlng", ["abc", "34.1", "34.1,-118.1,5"])
def test_bad_latlng_is_a_validation_error(db, latlng):
    with pytest.raises(ValidationError) as exc:
        tours.tours_within(db, 200, latlng, "mi")
    assert "latlng" in exc.value.errors
    with pytest.raises(ValidationError):
        tours.distances(db, latlng, "km")


# HTTP

def test_list_tours_with_filters(client, db):
    tours.create_tour(db, tour_payload(price=397))
    tours.create_tour(db, tour_payload(name="The Sea Explorer", price=497, difficulty="medium"))
    tours.create_tour(db, tour_payload(name="The Snow Adventurer", price=997, difficulty="difficult"))

    res = client.get("/api/v1/tours", params={"price[lt]": 900, "sort": "-price"})
    assert res.status_code == 200
    body = res.json()
    assert body["results"] == 2
    assert [t["name"] for t in body["data"]["data"]] == ["The Sea Explorer", "The Forest Hiker"]

    res = client.get("/api/v1/tours", params={"difficulty": "difficult", "fields": "name,price"})
    data = res.json()["data"]["data"]
    assert len(data) == 1
    assert set(data[0]) == {"id", "name", "price"}


def test_create_tour_requires_admin_or_lead_guide(client, make_user):
    res = client.post("/api/v1/tours", json=tour_payload())
    assert res.status_code == 401

    res = client.post("/api/v1/tours", json=tour_payload(), headers=auth_headers(make_user(role="user")))
    assert res.status_code == 403

    res = client.post("/api/v1/tours", json=tour_payload(), headers=auth_headers(make_user(role="admin")))
    assert res.status_code == 201
    assert res.json()["data"]["data"]["slug"] == "the-forest-hiker"


def test_validation_errors_are_structured(client, make_user):
    res = client.post(
        "/api/v1/tours",
        json=tour_payload(name="short"),
        headers=auth_headers(make_user(role="lead-guide")),
    )
    assert res.status_code == 400
    body = res.json()
    assert body["status"] == "fail"
    assert "name" in body["errors"]


def test_get_missing_tour_is_404(client):
    res = client.get("/api/v1/tours/5c88fa8cf4afda39709c2951")
    assert res.status_code == 404
    assert res.json()["message"] == "No tour found with that ID."


def test_top_five_cheap(client, db):
    for i, price in enumerate([500, 300, 900, 100, 700, 200]):
        tours.create_tour(db, tour_payload(name=f"Tour number {i:02d} ok", price=price))

    res = client.get("/api/v1/tours/top-5-cheap")
    data = res.json()["data"]["data"]
    assert [t["price"] for t in data] == [100, 200, 300, 500, 700]


def test_geo_routes_reject_bad_latlng(client):
    res = client.get("/api/v1/tours/tours-within/200/center/abc/unit/mi")
    assert res.status_code == 400
    assert res.json()["message"] == "Please provide latitude and longitude in the format lat,lng."

    res = client.get("/api/v1/tours/distances/34.1/unit/km")
    assert res.status_code == 400


def test_geo_routes_reject_unknown_unit(client):
    res = client.get("/api/v1/tours/tours-within/200/center/34.1,-118.1/unit/yards")
    assert res.status_code == 400
    assert res.json()["message"] == "Unit must be either mi or km."
    assert res.json()["errors"] == {"unit": "yards"}

    res = client.get("/api/v1/tours/distances/34.1,-118.1/unit/yards")
    assert res.status_code == 400
