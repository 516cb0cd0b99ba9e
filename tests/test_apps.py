import json

from werkzeug.datastructures import MultiDict

from request_scopes.app import create_catalog_app
from request_scopes.flask_scopes import parse_nested_params


def _client(tmp_path):
    app = create_catalog_app(str(tmp_path / "app.db"))
    return app.test_client()


def _names(payload) -> list[str]:
    return [tree["name"] for tree in payload["trees"]]


def test_health_endpoint(tmp_path) -> None:
    response = _client(tmp_path).get("/healthz")
    assert response.status_code == 200
    assert response.get_json() == {"status": "ok", "app": "catalog"}


def test_index_uses_fallback_listing_when_no_scope_is_given(tmp_path) -> None:
    payload = _client(tmp_path).get("/api/trees").get_json()
    assert _names(payload) == ["Birch", "Bonsai", "Cherry", "Maple", "Oak"]
    assert payload["current_scopes"] == {"order_by": "name"}


def test_index_applies_scalar_and_boolean_scopes(tmp_path) -> None:
    payload = _client(tmp_path).get("/api/trees?color=green&only_tall=true").get_json()
    assert _names(payload) == ["Oak"]
    assert payload["current_scopes"] == {"color": "green", "only_tall": True}


def test_index_skips_boolean_scope_when_false(tmp_path) -> None:
    payload = _client(tmp_path).get("/api/trees?color=green&only_tall=false").get_json()
    assert _names(payload) == ["Oak", "Bonsai"]
    assert payload["current_scopes"] == {"color": "green"}


def test_index_paginates_with_nested_params(tmp_path) -> None:
    payload = _client(tmp_path).get("/api/trees?paginate[page]=2&paginate[per_page]=2").get_json()
    assert _names(payload) == ["Maple", "Bonsai"]
    assert payload["current_scopes"] == {"paginate": {"page": "2", "per_page": "2"}}


def test_index_filters_by_category_list(tmp_path) -> None:
    payload = _client(tmp_path).get("/api/trees?categories[]=garden&categories[]=indoor").get_json()
    assert _names(payload) == ["Maple", "Bonsai", "Cherry"]
    assert payload["current_scopes"] == {"categories": ["garden", "indoor"]}


def test_index_applies_blank_root_type(tmp_path) -> None:
    payload = _client(tmp_path).get("/api/trees?root=").get_json()
    assert _names(payload) == ["Bonsai"]
    assert payload["current_scopes"] == {"root": ""}


def test_type_mismatch_returns_bad_request(tmp_path) -> None:
    response = _client(tmp_path).get("/api/trees?paginate=1")
    assert response.status_code == 400
    assert response.get_json()["scope"] == "paginate"


def test_invalid_order_returns_bad_request(tmp_path) -> None:
    response = _client(tmp_path).get("/api/trees?order_by=secret_column")
    assert response.status_code == 400
    assert "cannot order trees" in response.get_json()["error"]


def test_count_uses_session_default(tmp_path) -> None:
    client = _client(tmp_path)
    payload = client.get("/api/trees/count").get_json()
    assert payload == {"count": 5, "current_scopes": {"min_height": 0}}

    response = client.post("/api/preferences", data=json.dumps({"min_height": 20}), content_type="application/json")
    assert response.status_code == 200
    assert response.get_json() == {"min_height": 20}

    payload = client.get("/api/trees/count").get_json()
    assert payload == {"count": 2, "current_scopes": {"min_height": 20}}


def test_explicit_scope_suppresses_count_default(tmp_path) -> None:
    payload = _client(tmp_path).get("/api/trees/count?color=green").get_json()
    assert payload == {"count": 2, "current_scopes": {"color": "green"}}


def test_show_all_colors_preference_disables_color_scope(tmp_path) -> None:
    client = _client(tmp_path)
    client.post("/api/preferences", json={"show_all_colors": True})
    payload = client.get("/api/trees?color=green").get_json()
    assert len(payload["trees"]) == 5
    assert payload["current_scopes"] == {"order_by": "name"}


def test_show_applies_scopes_before_find(tmp_path) -> None:
    client = _client(tmp_path)
    found = client.get("/api/trees/1?color=green")
    assert found.status_code == 200
    assert found.get_json() == {
        "tree": {"id": 1, "name": "Oak", "color": "green", "height": 25, "category": "forest", "root_type": "taproot"},
        "current_scopes": {"color": "green"},
    }

    missing = client.get("/api/trees/1?color=white")
    assert missing.status_code == 404
    assert "error" in missing.get_json()


def test_scopes_can_be_loaded_from_config(tmp_path, monkeypatch) -> None:
    config_path = tmp_path / "scopes.json"
    config_path.write_text(json.dumps({"scopes": [{"name": "color"}, {"name": "order_by", "default": "height"}]}))
    monkeypatch.setenv("SCOPES_CONFIG_PATH", str(config_path))
    payload = _client(tmp_path).get("/api/trees?only_tall=true").get_json()
    assert _names(payload) == ["Bonsai", "Cherry", "Birch", "Oak", "Maple"]
    assert payload["current_scopes"] == {"order_by": "height"}


def test_unknown_predicate_in_config_is_a_server_error(tmp_path, monkeypatch) -> None:
    config_path = tmp_path / "scopes.json"
    config_path.write_text(json.dumps([{"name": "color", "if": "is_admin"}]))
    monkeypatch.setenv("SCOPES_CONFIG_PATH", str(config_path))
    response = _client(tmp_path).get("/api/trees")
    assert response.status_code == 500
    assert response.get_json() == {"error": "internal server error"}


def test_preferences_reject_non_object_body(tmp_path) -> None:
    client = _client(tmp_path)
    response = client.post("/api/preferences", json=[1, 2])
    assert response.status_code == 400
    assert response.get_json() == {"error": "preferences must be a JSON object"}

    response = client.post("/api/preferences", json={"min_height": "tall"})
    assert response.status_code == 400
    assert response.get_json() == {"error": "min_height must be an integer"}

    assert client.get("/api/trees/count").get_json()["current_scopes"] == {"min_height": 0}


def test_parse_nested_params() -> None:
    params = parse_nested_params(
        MultiDict(
            [
                ("color", "red"),
                ("color", "blue"),
                ("paginate[page]", "1"),
                ("paginate[per_page]", "10"),
                ("categories[]", "book"),
                ("categories[]", "sport"),
                ("filter[range][min]", "3"),
                ("odd[][x]", "1"),
            ]
        )
    )
    assert params == {
        "color": "blue",
        "paginate": {"page": "1", "per_page": "10"},
        "categories": ["book", "sport"],
        "filter": {"range": {"min": "3"}},
        "odd[][x]": "1",
    }
