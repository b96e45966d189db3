"""API tests for operator grouping changes."""

from uuid import uuid4

import pytest
from sqlalchemy import select

from booking_sync.models.tour_group import TourGroup
from factories import make_tour


async def seeded_tours(session, *sizes):
    tours = [make_tour(participants=size) for size in sizes]
    session.add_all(tours)
    await session.commit()
    return tours


@pytest.mark.asyncio
async def test_merge_requires_auth(test_client):
    response = await test_client.post("/v1/groups/merge", json={"tour_ids": [str(uuid4()), str(uuid4())]})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_merge_returns_the_group(test_client, auth_headers, test_session):
    first, second = await seeded_tours(test_session, 2, 3)

    response = await test_client.post(
        "/v1/groups/merge",
        json={"tour_ids": [str(first.id), str(second.id)], "display_name": "Morning Uffizi"},
        headers=auth_headers,
    )

    assert response.status_code == 201
    data = response.json()
    assert data["display_name"] == "Morning Uffizi"
    assert data["is_manual_merge"] is True
    assert data["total_pax"] == 5
    assert data["group_time"] == "09:00"
    assert {tour["id"] for tour in data["tours"]} == {str(first.id), str(second.id)}
    assert all(tour["group_id"] == data["id"] for tour in data["tours"])


@pytest.mark.asyncio
async def test_merge_over_capacity_is_a_conflict(test_client, auth_headers, test_session):
    first, second = await seeded_tours(test_session, 5, 6)

    response = await test_client.post(
        "/v1/groups/merge",
        json={"tour_ids": [str(first.id), str(second.id)]},
        headers=auth_headers,
    )

    assert response.status_code == 409
    data = response.json()
    assert data["code"] == "GROUP_CAPACITY_EXCEEDED"
    assert (data["total_pax"], data["max_pax"]) == (11, 9)


@pytest.mark.asyncio
async def test_merge_needs_two_tours(test_client, auth_headers):
    response = await test_client.post("/v1/groups/merge", json={"tour_ids": [str(uuid4())]}, headers=auth_headers)

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_unmerge_and_dissolve(test_client, auth_headers, test_session):
    tours = await seeded_tours(test_session, 1, 1, 1, 1)
    merged = await test_client.post(
        "/v1/groups/merge",
        json={"tour_ids": [str(tour.id) for tour in tours]},
        headers=auth_headers,
    )
    group_id = merged.json()["id"]

    response = await test_client.post("/v1/groups/unmerge", json={"tour_id": str(tours[0].id)}, headers=auth_headers)

    assert response.status_code == 200
    assert response.json() == {"tour_id": str(tours[0].id), "group_id": group_id, "group_dissolved": False}

    response = await test_client.post("/v1/groups/dissolve", json={"group_id": group_id}, headers=auth_headers)

    assert response.status_code == 200
    assert response.json() == {"group_id": group_id, "tours_ungrouped": 3}
    assert (await test_session.execute(select(TourGroup))).scalars().all() == []


@pytest.mark.asyncio
async def test_unmerge_of_ungrouped_tour(test_client, auth_headers, test_session):
    [tour] = await seeded_tours(test_session, 2)

    response = await test_client.post("/v1/groups/unmerge", json={"tour_id": str(tour.id)}, headers=auth_headers)

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_GROUP_OPERATION"


@pytest.mark.asyncio
async def test_dissolve_unknown_group(test_client, auth_headers):
    group_id = str(uuid4())

    response = await test_client.post("/v1/groups/dissolve", json={"group_id": group_id}, headers=auth_headers)

    assert response.status_code == 404
    data = response.json()
    assert data["code"] == "GROUP_NOT_FOUND"
    assert data["group_id"] == group_id
