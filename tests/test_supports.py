import pytest

import pickups
import points
import posts
import supports
from errors import Conflict, Forbidden, InvalidTransition, NotFound, ValidationFailed

SACHETS = {"materialID": "m4", "materialName": "Sachets", "quantity": 3}
CANS = {"materialID": "m9", "materialName": "Aluminum cans", "quantity": 1.5}
FINAL_WASTE = {"itemName": "Sachets", "materialIDs": ["m4"], "price": 0, "kg": 3}


@pytest.fixture
def initiative(db, collector):
    return posts.create_post(db, collector, {
        "postType": "Initiative",
        "title": "Eco-bricks drive",
        "description": "Collecting sachets and cans",
        "items": [{"itemName": "Sachets", "materialID": "m4", "kg": 20}],
    })


@pytest.fixture
def offer(db, giver, initiative):
    return supports.offer_support(db, giver, initiative["postID"], [SACHETS, CANS], notes=" Bagged ")


def test_offer_starts_pending_and_notifies_owner(db, giver, collector, offer):
    assert offer["status"] == "Pending"
    assert offer["giverID"] == giver.id
    assert offer["collectorID"] == collector.id
    assert offer["notes"] == "Bagged"
    assert [m["status"] for m in offer["offeredMaterials"]] == ["Pending", "Pending"]
    note = db["notification"].find_one({"userID": collector.id, "type": "Application"})
    assert note["referenceID"] == offer["supportID"]


def test_offer_rules(db, giver, collector, initiative):
    waste = posts.create_post(db, giver, {
        "postType": "Waste", "title": "Cans", "description": "A bag of cans",
        "items": [{"itemName": "Cans", "materialID": "m9", "sellingPrice": 40, "kg": 1}],
    })
    with pytest.raises(ValidationFailed):
        supports.offer_support(db, collector, waste["postID"], [SACHETS])
    with pytest.raises(ValidationFailed):
        supports.offer_support(db, collector, initiative["postID"], [SACHETS])
    with pytest.raises(ValidationFailed):
        supports.offer_support(db, giver, initiative["postID"], [])
    with pytest.raises(ValidationFailed):
        supports.offer_support(db, giver, initiative["postID"], [{**SACHETS, "quantity": 0}])
    with pytest.raises(ValidationFailed):
        supports.offer_support(db, giver, initiative["postID"], [SACHETS, SACHETS])
    with pytest.raises(NotFound):
        supports.offer_support(db, giver, "missing", [SACHETS])


def test_per_material_review(db, giver, collector, offer):
    partial = supports.accept_material(db, collector, offer["supportID"], "m4")
    assert partial["status"] == "PartiallyAccepted"
    assert partial["acceptedAt"] is not None

    done = supports.decline_material(db, collector, offer["supportID"], "m9", reason="No cans")
    assert done["status"] == "Accepted"
    assert {m["materialID"]: m["status"] for m in done["offeredMaterials"]} == {"m4": "Accepted", "m9": "Declined"}
    assert done == supports.get_support(db, offer["supportID"])

    titles = [n["title"] for n in db["notification"].find({"userID": giver.id})]
    assert titles == ["Support Accepted"]


def test_declining_every_material_declines_the_offer(db, collector, offer):
    supports.decline_material(db, collector, offer["supportID"], "m4")
    declined = supports.decline_material(db, collector, offer["supportID"], "m9")
    assert declined["status"] == "Declined"
    assert declined["declinedAt"] is not None
    with pytest.raises(InvalidTransition):
        supports.accept_material(db, collector, offer["supportID"], "m4")


def test_only_the_owner_reviews(db, giver, stranger, offer):
    with pytest.raises(Forbidden):
        supports.accept_support(db, giver, offer["supportID"])
    with pytest.raises(Forbidden):
        supports.decline_material(db, stranger, offer["supportID"], "m4")


def test_unknown_material(db, collector, offer):
    with pytest.raises(NotFound):
        supports.accept_material(db, collector, offer["supportID"], "m1")


def test_decline_whole_offer(db, giver, collector, offer):
    declined = supports.decline_support(db, collector, offer["supportID"], reason=" Full already ")
    assert declined["status"] == "Declined"
    assert declined["rejectionReason"] == "Full already"
    assert all(m["status"] == "Declined" for m in declined["offeredMaterials"])
    with pytest.raises(InvalidTransition):
        supports.accept_support(db, collector, offer["supportID"])


def test_review_race_reports_conflict(db, collector, offer, monkeypatch):
    real_get = supports.get_support
    calls = {"n": 0}

    def racing_get(database, support_id):
        doc = real_get(database, support_id)
        calls["n"] += 1
        if calls["n"] == 1:
            # another reviewer decided a different material in between
            database["support"].update_one(
                {"_id": support_id}, {"$set": {"offeredMaterials.1.status": "Accepted", "status": "PartiallyAccepted"}},
            )
        return doc

    monkeypatch.setattr(supports, "get_support", racing_get)
    with pytest.raises(Conflict):
        supports.accept_material(db, collector, offer["supportID"], "m4")
    stored = real_get(db, offer["supportID"])
    assert [m["status"] for m in stored["offeredMaterials"]] == ["Pending", "Accepted"]


def test_full_support_flow_awards_initiative_points(db, giver, collector, offer):
    supports.accept_support(db, collector, offer["supportID"])
    pickup = pickups.schedule_support_pickup(db, giver, offer["supportID"], "Barangay hall")
    assert pickup["supportID"] == offer["supportID"]
    assert pickup["giverID"] == giver.id
    assert pickup["collectorID"] == collector.id

    linked = supports.get_support(db, offer["supportID"])
    assert linked["status"] == "PickupScheduled"
    assert linked["pickupID"] == pickup["pickupID"]

    pickups.confirm_pickup(db, collector, pickup["pickupID"])
    pickups.complete_pickup(db, collector, pickup["pickupID"], FINAL_WASTE)

    completed = supports.get_support(db, offer["supportID"])
    assert completed["status"] == "Completed"
    assert completed["completedAt"] is not None
    rows = list(db["point"].find({"userID": giver.id, "transaction": "Initiative_Support"}))
    assert [r["pointsEarned"] for r in rows] == [supports.INITIATIVE_SUPPORT_POINTS]
    assert points.balance(db, giver.id) == points.GIVER_COMPLETION_POINTS + supports.INITIATIVE_SUPPORT_POINTS


def test_schedule_requires_accepted_offer(db, giver, offer):
    with pytest.raises(InvalidTransition):
        pickups.schedule_support_pickup(db, giver, offer["supportID"], "Barangay hall")


def test_schedule_conflict_releases_the_offer(db, giver, collector, initiative, offer):
    supports.accept_support(db, collector, offer["supportID"])
    # the giver already has a pickup running on this initiative
    pickups.propose_pickup(db, giver, initiative["postID"], "School gate")

    with pytest.raises(Conflict):
        pickups.schedule_support_pickup(db, giver, offer["supportID"], "Barangay hall")
    released = supports.get_support(db, offer["supportID"])
    assert released["status"] == "Accepted"
    assert released["pickupID"] is None


def test_cancelled_pickup_can_be_rescheduled(db, giver, collector, offer):
    supports.accept_support(db, collector, offer["supportID"])
    first = pickups.schedule_support_pickup(db, collector, offer["supportID"], "Barangay hall")
    pickups.cancel_pickup(db, giver, first["pickupID"], reason="Sick")

    assert supports.get_support(db, offer["supportID"])["status"] == "Accepted"
    second = pickups.schedule_support_pickup(db, giver, offer["supportID"], "Barangay hall")
    assert second["pickupID"] != first["pickupID"]


def test_cancel_support(db, giver, collector, stranger, offer):
    with pytest.raises(Forbidden):
        supports.cancel_support(db, stranger, offer["supportID"])

    cancelled = supports.cancel_support(db, giver, offer["supportID"], reason=" Changed plans ")
    assert cancelled["status"] == "Cancelled"
    assert cancelled["cancellationBy"] == giver.id
    assert cancelled["cancellationReason"] == "Changed plans"
    titles = [n["title"] for n in db["notification"].find({"userID": collector.id})]
    assert "Support Cancelled" in titles

    with pytest.raises(InvalidTransition):
        supports.cancel_support(db, giver, offer["supportID"])


def test_scheduled_offer_cancels_through_its_pickup(db, giver, collector, offer):
    supports.accept_support(db, collector, offer["supportID"])
    pickups.schedule_support_pickup(db, giver, offer["supportID"], "Barangay hall")
    with pytest.raises(InvalidTransition):
        supports.cancel_support(db, giver, offer["supportID"])


def test_listing(db, giver, collector, stranger, initiative, offer):
    assert [s["supportID"] for s in supports.list_for_initiative(db, initiative["postID"])] == [offer["supportID"]]
    assert supports.list_for_initiative(db, initiative["postID"], status="Completed") == []
    assert len(supports.list_supports(db, giver.id, "giver")) == 1
    assert len(supports.list_supports(db, collector.id)) == 1
    assert supports.list_supports(db, stranger.id) == []
    with pytest.raises(Forbidden):
        supports.get_support_for(db, stranger, offer["supportID"])
