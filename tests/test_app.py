"""Tests for the HTTP API."""

import json

import pytest
from fastapi.testclient import TestClient

from pacurhoja import app as app_module


@pytest.fixture
def client(repo, monkeypatch) -> TestClient:
    monkeypatch.setattr(app_module, "sheet_repo", repo)
    return TestClient(app_module.app)


@pytest.fixture
def sheet_id(client) -> str:
    response = client.post(
        "/sheets",
        json={"title": "Ventas", "cells": {"A1": "5", "A2": "text", "A3": "=SUMA(A1:A2)"}},
    )
    assert response.status_code == 200
    return response.json()["id"]


def test_health(client) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_create_sheet_returns_values(client) -> None:
    response = client.post("/sheets", json={"cells": {"A1": "=2+3*4", "B1": "=A1/0"}})
    assert response.status_code == 200
    body = response.json()
    assert body["title"] == "Untitled Sheet"
    assert body["values"]["A1"] == {"kind": "value", "display": "14", "number": 14.0}
    assert body["values"]["B1"]["kind"] == "math_error"
    assert body["values"]["B1"]["display"] == "#ERROR"


def test_create_sheet_rejects_out_of_grid(client) -> None:
    response = client.post("/sheets", json={"cells": {"Z1": "1"}})
    assert response.status_code == 422


def test_list_get_and_delete(client, sheet_id) -> None:
    assert [s["id"] for s in client.get("/sheets").json()] == [sheet_id]
    assert client.get(f"/sheets/{sheet_id}").json()["values"]["A3"]["display"] == "5"
    assert client.delete(f"/sheets/{sheet_id}").status_code == 200
    assert client.get(f"/sheets/{sheet_id}").status_code == 404
    assert client.delete(f"/sheets/{sheet_id}").status_code == 404


def test_update_title(client, sheet_id) -> None:
    response = client.put(f"/sheets/{sheet_id}/title", json={"title": "  Q3  "})
    assert response.json()["title"] == "Q3"
    assert client.put(f"/sheets/{sheet_id}/title", json={"title": " "}).status_code == 400


def test_update_cell(client, sheet_id) -> None:
    response = client.put(f"/sheets/{sheet_id}/cell", json={"address": "A2", "value": "7"})
    assert response.status_code == 200
    assert response.json()["values"]["A3"]["display"] == "12"

    response = client.put(f"/sheets/{sheet_id}/cell", json={"address": "B1", "value": "=B1"})
    assert response.json()["values"]["B1"]["display"] == "#CIRCULAR"


def test_update_cell_errors(client, sheet_id) -> None:
    response = client.put(f"/sheets/{sheet_id}/cell", json={"address": "A51", "value": "1"})
    assert response.status_code == 422
    response = client.put("/sheets/missing/cell", json={"address": "A1", "value": "1"})
    assert response.status_code == 404


def test_update_format(client, sheet_id) -> None:
    client.put(f"/sheets/{sheet_id}/cell", json={"address": "B1", "value": "=A1/10"})
    response = client.put(f"/sheets/{sheet_id}/format", json={"address": "B1", "format": "Percentage"})
    assert response.status_code == 200
    assert response.json()["formats"] == {"B1": "Percentage"}
    assert response.json()["values"]["B1"]["display"] == "50%"

    response = client.put(f"/sheets/{sheet_id}/format", json={"address": "B1", "format": None})
    assert response.json()["values"]["B1"]["display"] == "0.5"

    response = client.put(f"/sheets/{sheet_id}/format", json={"address": "B1", "format": "Bogus"})
    assert response.status_code == 422


def test_cell_detail(client, sheet_id) -> None:
    response = client.get(f"/sheets/{sheet_id}/cells/a1")
    assert response.status_code == 200
    body = response.json()
    assert body["address"] == "A1"
    assert body["raw"] == "5"
    assert body["dependents"] == ["A3"]
    assert body["result"]["display"] == "5"

    padded = client.get(f"/sheets/{sheet_id}/cells/A01").json()
    assert padded["address"] == "A1"
    assert padded["raw"] == "5"

    assert client.get(f"/sheets/{sheet_id}/cells/P1").status_code == 422
    assert client.get("/sheets/missing/cells/A1").status_code == 404


def test_evaluate_without_storing(client) -> None:
    cells = {"A1": "=B1", "B1": "=A1", "C1": "=2^3"}
    response = client.post("/evaluate", json={"cells": cells})
    assert response.status_code == 200
    body = response.json()
    assert body["A1"]["kind"] == "circular"
    assert body["C1"]["display"] == "8"

    response = client.post("/evaluate", json={"cells": cells, "addresses": ["c1", "D4"]})
    assert set(response.json()) == {"C1", "D4"}
    assert response.json()["D4"]["display"] == ""

    assert client.post("/evaluate", json={"cells": {"AA1": "1"}}).status_code == 422
    assert client.get("/sheets").json() == []


def test_export_and_import(client, sheet_id) -> None:
    response = client.get(f"/sheets/{sheet_id}/export")
    assert response.status_code == 200
    assert 'filename="hoja_calculo.aph"' in response.headers["content-disposition"]
    exported = response.json()
    assert exported == {"A1": "5", "A2": "text", "A3": "=SUMA(A1:A2)"}

    response = client.post(
        "/sheets/import",
        files={"file": ("hoja_calculo.aph", json.dumps(exported), "application/json")},
    )
    assert response.status_code == 200
    imported = response.json()
    assert imported["title"] == "hoja_calculo"
    assert imported["id"] != sheet_id
    assert imported["values"]["A3"]["display"] == "5"


def test_import_rejects_bad_file(client) -> None:
    response = client.post("/sheets/import", files={"file": ("x.aph", b"[1, 2]", "application/json")})
    assert response.status_code == 422
    response = client.post("/sheets/import", files={"file": ("x.aph", b"\xff\xfe", "application/json")})
    assert response.status_code == 422


def test_export_missing_sheet(client) -> None:
    assert client.get("/sheets/missing/export").status_code == 404
