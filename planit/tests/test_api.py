"""End-to-end tests for the recommendation HTTP routes."""

import json

import pytest
from conftest import BAKU, FakePlaceSearch, ScriptedCompletion
from fastapi.testclient import TestClient
from planit.app import main as main_module
from planit.app.container import build_container

AI_REPLY = json.dumps(
    [
        {
            "placeName": "Art Garden",
            "category": "cafe",
            "personalizedReason": "Quiet courtyard for reading",
            "confidenceScore": 0.66,
            "matchingPreferences": ["quiet"],
        },
        {
            "placeName": "Firuze",
            "category": "restaurant",
            "personalizedReason": "Traditional dishes you liked before",
            "confidenceScore": 0.88,
            "matchingPreferences": ["local"],
        },
    ]
)

PLACE = {
    "id": "pid-sahil",
    "name": "Sahil",
    "category": "bars",
    "location": {"latitude": 40.37, "longitude": 49.84},
    "types": ["bar", "night_club"],
}


@pytest.fixture
def pipeline():
    completion = ScriptedCompletion([AI_REPLY])
    search = FakePlaceSearch()

    def _build(config=None):
        return build_container(config, completion=completion, place_search=search)

    patcher = pytest.MonkeyPatch()
    patcher.setattr(main_module, "build_container", _build)
    with TestClient(main_module.app, base_url="http://api.testserver") as test_client:
        yield test_client, completion, search
    patcher.undo()


class TestRecommendationRoutes:
    def test_new_user_has_empty_feed(self, client):
        response = client.get("/v1/users/new-user/recommendations")

        assert response.status_code == 200
        body = response.json()
        assert body["user_id"] == "new-user"
        assert body["recommendations"] == []
        assert body["is_generating"] is False
        assert body["context"] is None

    def test_invalid_user_id_is_rejected(self, client):
        response = client.get("/v1/users/bad%20id!/recommendations")
        assert response.status_code == 422

    def test_refresh_with_location(self, pipeline):
        client, completion, search = pipeline

        response = client.post(
            "/v1/users/u1/recommendations/refresh",
            json={"lat": BAKU[0], "lng": BAKU[1], "weather": "Sunny"},
        )

        assert response.status_code == 200
        body = response.json()
        names = [rec["place"]["name"] for rec in body["recommendations"]]
        assert names == ["Firuze", "Art Garden"]
        assert body["recommendations"][0]["confidence"] == pytest.approx(0.88)
        assert body["recommendations"][1]["place"]["category"] == "restaurants"
        assert body["context"]["weather"] == "Sunny"
        assert body["last_updated"] is not None
        assert completion.calls == 1
        assert sorted(search.queries) == ["Art Garden cafe", "Firuze restaurant"]

    def test_refresh_without_location_skips_run(self, pipeline):
        client, completion, _ = pipeline

        response = client.post("/v1/users/u1/recommendations/refresh")

        assert response.status_code == 200
        assert response.json()["recommendations"] == []
        assert completion.calls == 0

    def test_refresh_rejects_out_of_range_coordinates(self, pipeline):
        client, _, _ = pipeline
        response = client.post("/v1/users/u1/recommendations/refresh", json={"lat": 123, "lng": 0})
        assert response.status_code == 422

    def test_context_snapshot(self, pipeline):
        client, _, _ = pipeline
        assert client.get("/v1/users/u1/context").status_code == 404

        client.post("/v1/users/u1/recommendations/refresh", json={"lat": BAKU[0], "lng": BAKU[1]})
        response = client.get("/v1/users/u1/context")

        assert response.status_code == 200
        body = response.json()
        assert body["location"] == {"latitude": BAKU[0], "longitude": BAKU[1]}
        assert ["highly rated", 1] in body["top_tags"]
        assert body["previous_names"] == []

    def test_location_update_is_recorded(self, pipeline):
        client, completion, _ = pipeline

        response = client.post("/v1/users/u1/location", json={"lat": BAKU[0], "lng": BAKU[1]})
        assert response.json() == {"user_id": "u1", "refresh_scheduled": False}

        client.post("/v1/users/u1/recommendations/refresh")
        assert completion.calls == 1


class TestFingerprintRoutes:
    def test_default_fingerprint(self, client):
        response = client.get("/v1/users/fresh/fingerprint")

        assert response.status_code == 200
        fingerprint = response.json()["fingerprint"]
        assert fingerprint["userId"] == "fresh"
        assert fingerprint["preferredPlaceTypes"] == ["restaurant", "cafe", "park", "shopping"]
        assert fingerprint["likes"] == []

    def test_reaction_updates_fingerprint(self, client):
        response = client.post("/v1/users/u7/reactions", json={"place": PLACE, "reaction": "liked"})

        assert response.status_code == 202
        assert response.json() == {"user_id": "u7", "recorded": True}

        fingerprint = client.get("/v1/users/u7/fingerprint").json()["fingerprint"]
        assert fingerprint["likes"] == ["Sahil"]
        assert fingerprint["likeCount"] == 1
        assert fingerprint["tagAffinities"]["bars"] == 1
        assert fingerprint["interactionLogs"][0]["action"] == "liked"

    def test_read_only_routes_do_not_track_users(self, client):
        for index in range(5):
            assert client.get(f"/v1/users/reader-{index}/recommendations").status_code == 200
            assert client.get(f"/v1/users/reader-{index}/fingerprint").json()["loaded"] is False

        assert client.app.state.container.fingerprints.tracked == []

    def test_unknown_reaction_is_rejected(self, client):
        response = client.post("/v1/users/u7/reactions", json={"place": PLACE, "reaction": "meh"})
        assert response.status_code == 422


class TestLifecycle:
    def test_services_unavailable_outside_lifespan(self):
        bare = TestClient(main_module.app)
        response = bare.get("/v1/users/u1/recommendations")
        assert response.status_code == 503
