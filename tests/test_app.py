import io
import os
import time

import pandas as pd
import pytest
from fastapi.testclient import TestClient

import main
from main import app, ArtifactNotFound, ArtifactStore

client = TestClient(app)


@pytest.fixture(autouse=True)
def artifact_store(tmp_path, monkeypatch):
    """Keep generated CSV files in a per-test directory"""
    store = ArtifactStore(tmp_path / "temp_csv", ttl_seconds=300)
    monkeypatch.setattr(main, "artifact_store", store)
    return store


@pytest.fixture
def sample_csv_a():
    """Sample CSV data for file A"""
    return b"""id,name,email,city
1,Alice,alice@test.com,New York
2,Bob,bob@test.com,Boston
3,Charlie,charlie@test.com,Chicago"""


@pytest.fixture
def sample_csv_b():
    """Sample CSV data for file B"""
    return b"""id,name,phone
1,Alice,555-0100
2,Robert,555-0101
4,Daniel,555-0102"""


def upload(name_a, content_a, name_b, content_b):
    return {
        "fileA": (name_a, io.BytesIO(content_a), "application/octet-stream"),
        "fileB": (name_b, io.BytesIO(content_b), "application/octet-stream"),
    }


class TestHealthCheck:
    def test_health_endpoint(self):
        """Test health check endpoint"""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"ok": True}

    def test_root_serves_html_to_browsers(self):
        response = client.get("/", headers={"accept": "text/html"})
        assert response.status_code == 200
        assert "File Cross-Checker" in response.text

    def test_root_describes_api(self):
        response = client.get("/", headers={"accept": "application/json"})
        assert response.status_code == 200
        assert response.json()["endpoints"]["cross_check"] == "POST /cross-check"


class TestGetHeaders:
    def test_structured_headers_union(self, sample_csv_a, sample_csv_b):
        """Headers of both files, A's first"""
        response = client.post("/get-headers", files=upload("a.csv", sample_csv_a, "b.csv", sample_csv_b))

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["headers"] == ["id", "name", "email", "city", "phone"]
        assert data["file_a_type"] == "structured"
        assert data["file_b_type"] == "structured"

    def test_text_file_offers_line_content(self, sample_csv_a):
        response = client.post("/get-headers", files=upload("a.csv", sample_csv_a, "b.txt", b"1\n2\n"))

        assert response.status_code == 200
        assert response.json()["headers"] == ["Line Content"]
        assert response.json()["file_b_type"] == "plain_text"

    def test_missing_file(self, sample_csv_a):
        response = client.post(
            "/get-headers",
            files={"fileA": ("a.csv", io.BytesIO(sample_csv_a), "text/csv")}
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Please upload both files to get headers."

    def test_invalid_extension(self, sample_csv_a):
        response = client.post("/get-headers", files=upload("a.pdf", b"%PDF", "b.csv", sample_csv_a))

        assert response.status_code == 400
        assert "files are allowed" in response.json()["detail"]


class TestCrossCheck:
    def test_structured_cross_check(self, sample_csv_a, sample_csv_b):
        response = client.post(
            "/cross-check",
            files=upload("customers_a.csv", sample_csv_a, "customers_b.csv", sample_csv_b),
            data={"selectedColumn": "id"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["found_count"] == 2
        assert data["missing_count"] == 1
        assert data["total_file_a_rows"] == 3
        assert data["comparison_column"] == "id"
        assert data["file_a_name"] == "customers_a.csv"
        assert data["file_b_name"] == "customers_b.csv"
        assert data["missing_contents"] == [
            {"id": "3", "name": "Charlie", "email": "charlie@test.com", "city": "Chicago"}
        ]
        assert data["matched_csv_filename"].startswith("matched_contents_")
        assert data["missing_csv_filename"].startswith("missing_contents_")

    def test_compare_on_other_column(self, sample_csv_a, sample_csv_b):
        """Bob is 'Robert' in file B, so matching on name finds only Alice"""
        response = client.post(
            "/cross-check",
            files=upload("a.csv", sample_csv_a, "b.csv", sample_csv_b),
            data={"selectedColumn": "name"}
        )

        data = response.json()
        assert data["found_count"] == 1
        assert [row["name"] for row in data["missing_contents"]] == ["Bob", "Charlie"]

    def test_unknown_column(self, sample_csv_a, sample_csv_b):
        response = client.post(
            "/cross-check",
            files=upload("a.csv", sample_csv_a, "b.csv", sample_csv_b),
            data={"selectedColumn": "zzz"}
        )

        assert response.status_code == 400
        assert "'zzz' not found in File A headers" in response.json()["detail"]

    def test_plain_text_cross_check(self):
        response = client.post("/cross-check", files=upload("a.txt", b"foo\nbar\n", "b.txt", b"bar\r\n"))

        assert response.status_code == 200
        data = response.json()
        assert data["found_count"] == 1
        assert data["missing_count"] == 1
        assert data["missing_contents"] == ["foo"]
        assert data["comparison_column"] == "Line Content"

    def test_missing_preview_is_capped(self):
        lines_a = "\n".join(f"line {i}" for i in range(25)).encode()
        response = client.post("/cross-check", files=upload("a.txt", lines_a, "b.txt", b"line 0\n"))

        data = response.json()
        assert data["missing_count"] == 24
        assert len(data["missing_contents"]) == 10
        assert data["missing_contents"][0] == "line 1"

    def test_file_a_empty(self, sample_csv_b):
        response = client.post(
            "/cross-check",
            files=upload("a.csv", b"id,name\n", "b.csv", sample_csv_b),
            data={"selectedColumn": "id"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "File A is empty. Nothing to cross-check."
        assert data["found_count"] == 0
        assert data["missing_count"] == 0
        assert data["matched_csv_filename"] is None
        assert data["missing_csv_filename"] is None

    def test_file_b_empty(self, sample_csv_a):
        response = client.post(
            "/cross-check",
            files=upload("a.csv", sample_csv_a, "b.txt", b"\n\n"),
        )

        data = response.json()
        assert data["message"] == "File B is empty. No contents to compare against."
        assert data["total_file_a_rows"] == 3
        assert data["missing_count"] == 0

    def test_unreadable_spreadsheet(self, sample_csv_b):
        response = client.post(
            "/cross-check",
            files=upload("a.xlsx", b"not really excel", "b.csv", sample_csv_b),
            data={"selectedColumn": "id"}
        )

        assert response.status_code == 400
        assert "a.xlsx" in response.json()["detail"]

    def test_xlsx_preview_keeps_native_values(self, sample_csv_b):
        """Spreadsheet numbers and booleans come back as JSON numbers and booleans"""
        df = pd.DataFrame({"id": [1, 2, 3], "active": [True, False, True]})
        buffer = io.BytesIO()
        df.to_excel(buffer, index=False, engine="openpyxl")

        response = client.post(
            "/cross-check",
            files=upload("accounts.xlsx", buffer.getvalue(), "b.csv", sample_csv_b),
            data={"selectedColumn": "id"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["found_count"] == 2
        assert data["missing_contents"] == [{"id": 3, "active": True}]

        matched = client.get(f"/download-csv/{data['matched_csv_filename']}")
        assert matched.text == "id,active\n1,true\n2,false\n"

    def test_missing_file(self, sample_csv_a):
        response = client.post(
            "/cross-check",
            files={"fileB": ("b.csv", io.BytesIO(sample_csv_a), "text/csv")}
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Please upload both File A and File B."


class TestDownload:
    def test_download_is_read_once(self, sample_csv_a, sample_csv_b):
        cross_check = client.post(
            "/cross-check",
            files=upload("a.csv", sample_csv_a, "b.csv", sample_csv_b),
            data={"selectedColumn": "id"}
        )
        filename = cross_check.json()["missing_csv_filename"]

        download_response = client.get(f"/download-csv/{filename}")
        assert download_response.status_code == 200
        assert download_response.headers["content-type"] == "text/csv; charset=utf-8"
        assert "attachment" in download_response.headers["content-disposition"]
        assert download_response.text == "id,name,email,city\n3,Charlie,charlie@test.com,Chicago\n"

        second = client.get(f"/download-csv/{filename}")
        assert second.status_code == 404
        assert second.json()["detail"] == "File not found or has expired."

    def test_matched_download(self, sample_csv_a, sample_csv_b):
        cross_check = client.post(
            "/cross-check",
            files=upload("a.csv", sample_csv_a, "b.csv", sample_csv_b),
            data={"selectedColumn": "id"}
        )

        response = client.get(f"/download-csv/{cross_check.json()['matched_csv_filename']}")
        assert response.status_code == 200
        assert response.text.splitlines()[1:] == [
            "1,Alice,alice@test.com,New York",
            "2,Bob,bob@test.com,Boston",
        ]

    def test_unknown_file(self):
        response = client.get("/download-csv/missing_contents_2024-01-01_abc.csv")
        assert response.status_code == 404

    def test_invalid_name(self):
        response = client.get("/download-csv/secrets.txt")
        assert response.status_code == 404


class TestArtifactStore:
    def test_put_and_get(self, artifact_store):
        handle = artifact_store.put(b"a,b\n1,2\n", "matched_contents")

        assert handle.startswith("matched_contents_")
        assert handle.endswith(".csv")
        assert artifact_store.get(handle) == b"a,b\n1,2\n"
        with pytest.raises(ArtifactNotFound):
            artifact_store.get(handle)

    def test_expired_artifact_is_not_served(self, artifact_store):
        handle = artifact_store.put(b"x\n", "missing_contents")
        old = time.time() - 600
        os.utime(artifact_store.directory / handle, (old, old))

        with pytest.raises(ArtifactNotFound):
            artifact_store.get(handle)
        assert not (artifact_store.directory / handle).exists()

    def test_purge_expired_keeps_fresh_files(self, artifact_store):
        fresh = artifact_store.put(b"x\n", "matched_contents")
        stale = artifact_store.put(b"y\n", "matched_contents")
        old = time.time() - 600
        os.utime(artifact_store.directory / stale, (old, old))

        assert artifact_store.purge_expired() == 1
        assert (artifact_store.directory / fresh).exists()

    def test_rejects_path_like_handles(self, artifact_store):
        with pytest.raises(ArtifactNotFound):
            artifact_store.get("../main.py")

    def test_startup_creates_store_directory(self, artifact_store):
        assert not artifact_store.directory.exists()

        with TestClient(app):
            assert artifact_store.directory.is_dir()
