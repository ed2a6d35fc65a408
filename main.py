import io
import logging
import os
import re
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import uvicorn
from fastapi import FastAPI, File, Form, HTTPException, UploadFile, Request, APIRouter
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse, HTMLResponse
from pydantic import BaseModel, Field

from crosscheck import (
    CrossCheckError,
    Table,
    candidate_keys,
    ingest,
    reconcile,
    serialize,
)

# Configuration
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8090"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
MAX_FILE_SIZE = 100 * 1024 * 1024  # 100MB
ALLOWED_EXTENSIONS = ('.xlsx', '.xls', '.csv', '.txt')
SAMPLE_SIZE = 10
ARTIFACT_DIR = Path(os.environ.get("ARTIFACT_DIR", "./temp_csv"))
ARTIFACT_TTL_SECONDS = int(os.environ.get("ARTIFACT_TTL_SECONDS", "300"))  # 5 minutes

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="File Cross-Checker API",
    description="Checks which records of File A also appear in File B, keyed on a chosen column or whole lines",
    version="1.0.0"
)

api_router = APIRouter()

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Pydantic models
class HeadersResponse(BaseModel):
    success: bool = True
    headers: List[str] = Field(description="Comparison keys offered for this pair of files")
    file_a_type: str = Field(description="'structured' or 'plain_text'")
    file_b_type: str = Field(description="'structured' or 'plain_text'")


class CrossCheckResponse(BaseModel):
    success: bool = True
    message: str
    found_count: int = Field(description="Rows of file A found in file B")
    missing_count: int = Field(description="Rows of file A not found in file B")
    total_file_a_rows: int
    missing_contents: List[Union[Dict[str, Any], str]] = Field(
        default_factory=list, description=f"Up to {SAMPLE_SIZE} missing records for on-screen display"
    )
    matched_csv_filename: Optional[str] = Field(None, description="Download handle for the matched rows, if any")
    missing_csv_filename: Optional[str] = Field(None, description="Download handle for the missing rows, if any")
    file_a_name: str
    file_b_name: str
    comparison_column: Optional[str] = Field(None, description="Column (or 'Line Content') actually compared")


class ArtifactNotFound(Exception):
    """Raised when a download handle is unknown, expired or malformed"""


class ArtifactStore:
    """
    Generated CSV files waiting to be downloaded.
    Each artifact is served once and never outlives the TTL.
    """

    HANDLE_PATTERN = re.compile(r"[A-Za-z0-9_\-]+\.csv")

    def __init__(self, directory: Path, ttl_seconds: int):
        self.directory = Path(directory)
        self.ttl = timedelta(seconds=ttl_seconds)

    def _path(self, handle: str) -> Path:
        if not self.HANDLE_PATTERN.fullmatch(handle):
            raise ArtifactNotFound(handle)
        return self.directory / handle

    def put(self, data: bytes, prefix: str) -> str:
        self.directory.mkdir(parents=True, exist_ok=True)
        self.purge_expired()

        handle = f"{prefix}_{datetime.now():%Y-%m-%d}_{uuid.uuid4().hex}.csv"
        self._path(handle).write_bytes(data)
        logger.info("Saved artifact %s (%d bytes)", handle, len(data))
        return handle

    def get(self, handle: str) -> bytes:
        self.purge_expired()

        path = self._path(handle)
        if not path.is_file():
            raise ArtifactNotFound(handle)

        data = path.read_bytes()
        path.unlink(missing_ok=True)
        logger.info("Served and removed artifact %s", handle)
        return data

    def purge_expired(self) -> int:
        """Remove artifacts older than the TTL"""
        if not self.directory.exists():
            return 0

        cutoff_time = datetime.now() - self.ttl
        removed = 0
        for path in self.directory.iterdir():
            if not path.is_file():
                continue
            try:
                if datetime.fromtimestamp(path.stat().st_mtime) < cutoff_time:
                    path.unlink()
                    removed += 1
                    logger.info("Cleaned up expired artifact: %s", path.name)
            except OSError as e:
                logger.warning("Failed to clean up artifact %s: %s", path.name, e)
        return removed


artifact_store = ArtifactStore(ARTIFACT_DIR, ARTIFACT_TTL_SECONDS)


def is_missing_upload(upload: Optional[UploadFile]) -> bool:
    return upload is None or not upload.filename


async def read_upload(upload: UploadFile) -> bytes:
    """Validate an uploaded file's type and size and return its bytes"""
    if not upload.filename.lower().endswith(ALLOWED_EXTENSIONS):
        raise HTTPException(
            status_code=400,
            detail="Only Excel (.xlsx, .xls), Text (.txt), and CSV (.csv) files are allowed!"
        )

    data = await upload.read()
    if len(data) > MAX_FILE_SIZE:
        raise HTTPException(
            status_code=400,
            detail=f"File {upload.filename} must be smaller than {MAX_FILE_SIZE / (1024*1024):.0f}MB"
        )
    return data


async def ingest_uploads(file_a: UploadFile, file_b: UploadFile) -> Tuple[Table, Table]:
    raw_a = await read_upload(file_a)
    raw_b = await read_upload(file_b)
    return ingest(raw_a, file_a.filename), ingest(raw_b, file_b.filename)


# Startup event
@app.on_event("startup")
async def startup_event():
    """Clean up expired artifacts on startup"""
    artifact_store.directory.mkdir(parents=True, exist_ok=True)
    artifact_store.purge_expired()


# Endpoints
@api_router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"ok": True}


@api_router.post("/get-headers", response_model=HeadersResponse)
async def get_headers(
    file_a: Optional[UploadFile] = File(None, alias="fileA"),
    file_b: Optional[UploadFile] = File(None, alias="fileB"),
):
    """Return the comparison keys available for two files"""
    logger.info("[GET_HEADERS] Request received.")

    if is_missing_upload(file_a) or is_missing_upload(file_b):
        raise HTTPException(status_code=400, detail="Please upload both files to get headers.")

    try:
        table_a, table_b = await ingest_uploads(file_a, file_b)
        headers = candidate_keys(table_a, table_b)
    except HTTPException:
        raise
    except CrossCheckError as e:
        logger.warning("[GET_HEADERS] %s", e)
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("[GET_HEADERS] Server error getting headers")
        raise HTTPException(status_code=500, detail=f"An error occurred while getting headers: {str(e)}")

    logger.info("[GET_HEADERS] Unique headers determined: %s", headers)
    return HeadersResponse(
        headers=headers,
        file_a_type=table_a.kind.value,
        file_b_type=table_b.kind.value,
    )


@api_router.post("/cross-check", response_model=CrossCheckResponse)
async def cross_check(
    file_a: Optional[UploadFile] = File(None, alias="fileA"),
    file_b: Optional[UploadFile] = File(None, alias="fileB"),
    selected_column: Optional[str] = Form(None, alias="selectedColumn"),
):
    """Cross-check file A against file B and prepare CSV downloads"""
    logger.info("[CROSS_CHECK] Request received. Selected column: %s", selected_column)

    if is_missing_upload(file_a) or is_missing_upload(file_b):
        raise HTTPException(status_code=400, detail="Please upload both File A and File B.")

    try:
        table_a, table_b = await ingest_uploads(file_a, file_b)
        result = reconcile(table_a, table_b, selected_column)

        matched_csv_filename = None
        if result.matched:
            matched_csv_filename = artifact_store.put(
                serialize(result.matched, table_a.kind, table_a.columns), "matched_contents"
            )

        missing_csv_filename = None
        if result.missing:
            missing_csv_filename = artifact_store.put(
                serialize(result.missing, table_a.kind, table_a.columns), "missing_contents"
            )
    except HTTPException:
        raise
    except CrossCheckError as e:
        logger.warning("[CROSS_CHECK] %s", e)
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("[CROSS_CHECK] Server error during cross-check")
        raise HTTPException(status_code=500, detail=f"An error occurred: {str(e)}")

    return CrossCheckResponse(
        message=result.message,
        found_count=result.matched_count,
        missing_count=result.missing_count,
        total_file_a_rows=result.total_a_rows,
        missing_contents=result.missing[:SAMPLE_SIZE],
        matched_csv_filename=matched_csv_filename,
        missing_csv_filename=missing_csv_filename,
        file_a_name=file_a.filename,
        file_b_name=file_b.filename,
        comparison_column=result.effective_key,
    )


@api_router.get("/download-csv/{filename}")
async def download_csv(filename: str):
    """Download a generated CSV file; it is removed once served"""
    try:
        data = artifact_store.get(filename)
    except ArtifactNotFound:
        raise HTTPException(status_code=404, detail="File not found or has expired.")

    return StreamingResponse(
        io.BytesIO(data),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )


INDEX_HTML = """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>File Cross-Checker</title>
    <style>
        * { box-sizing: border-box; }
        body {
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            max-width: 960px;
            margin: 0 auto;
            padding: 20px;
            line-height: 1.6;
            color: #333;
            background: #f5f5f5;
        }
        .hero {
            background: linear-gradient(135deg, #667eea 0%, #764ba2 100%);
            color: white;
            padding: 30px;
            border-radius: 10px;
            margin-bottom: 30px;
            text-align: center;
        }
        .card {
            background: white;
            border: 1px solid #dee2e6;
            border-radius: 8px;
            padding: 25px;
            margin-bottom: 20px;
            box-shadow: 0 2px 4px rgba(0,0,0,0.1);
        }
        .btn {
            background: #007bff;
            color: white;
            padding: 12px 24px;
            border: none;
            border-radius: 6px;
            cursor: pointer;
            font-size: 16px;
            margin: 5px;
            text-decoration: none;
        }
        .btn:hover { background: #0056b3; }
        .btn:disabled { background: #6c757d; cursor: not-allowed; }
        .btn-success { background: #28a745; }
        .columns-grid { display: grid; grid-template-columns: 1fr 1fr; gap: 20px; }
        .form-group { margin: 15px 0; }
        .form-group label { display: block; font-weight: bold; margin-bottom: 5px; }
        .form-group select, .form-group input { width: 100%; padding: 10px; border: 1px solid #ddd; border-radius: 4px; }
        .status { padding: 15px; border-radius: 6px; margin: 15px 0; }
        .status.success { background: #d4edda; color: #155724; border: 1px solid #c3e6cb; }
        .status.error { background: #f8d7da; color: #721c24; border: 1px solid #f5c6cb; }
        .status.info { background: #d1ecf1; color: #0c5460; border: 1px solid #bee5eb; }
        .hidden { display: none; }
        pre { background: #f8f9fa; padding: 10px; border-radius: 4px; overflow-x: auto; }
    </style>
</head>
<body>
    <div class="hero">
        <h1>File Cross-Checker</h1>
        <p>Find which records of File A are present in File B (.xlsx, .xls, .csv, .txt)</p>
    </div>

    <div class="card">
        <div class="columns-grid">
            <div class="form-group">
                <label for="fileA">File A (records to check)</label>
                <input type="file" id="fileA" accept=".xlsx,.xls,.csv,.txt">
            </div>
            <div class="form-group">
                <label for="fileB">File B (records to check against)</label>
                <input type="file" id="fileB" accept=".xlsx,.xls,.csv,.txt">
            </div>
        </div>
        <div class="form-group">
            <label for="header-select">Compare on column:</label>
            <select id="header-select" disabled>
                <option value="">Upload both files to load options...</option>
            </select>
            <small id="header-message"></small>
        </div>
        <button id="check-btn" class="btn btn-success" disabled onclick="crossCheck()">Cross-Check Files</button>
        <div id="status" class="status hidden"></div>
    </div>

    <div class="card hidden" id="results">
        <h2>Results</h2>
        <p id="summary"></p>
        <div id="downloads"></div>
        <h3>Sample of missing contents</h3>
        <pre id="missing-preview"></pre>
    </div>

    <script>
        const fileA = document.getElementById('fileA');
        const fileB = document.getElementById('fileB');
        const headerSelect = document.getElementById('header-select');
        const headerMessage = document.getElementById('header-message');
        const checkBtn = document.getElementById('check-btn');

        function showStatus(message, type) {
            const status = document.getElementById('status');
            status.className = 'status ' + type;
            status.textContent = message;
        }

        function formData() {
            const data = new FormData();
            data.append('fileA', fileA.files[0]);
            data.append('fileB', fileB.files[0]);
            return data;
        }

        async function loadHeaders() {
            headerSelect.innerHTML = '';
            checkBtn.disabled = true;
            if (!fileA.files[0] || !fileB.files[0]) {
                headerSelect.appendChild(new Option('Upload both files to load options...', ''));
                headerSelect.disabled = true;
                return;
            }

            headerMessage.textContent = 'Fetching column headers...';
            try {
                const response = await fetch('/get-headers', { method: 'POST', body: formData() });
                const data = await response.json();
                if (!response.ok) {
                    headerMessage.textContent = '';
                    showStatus(data.detail, 'error');
                    return;
                }

                if (data.file_a_type === 'structured' && data.file_b_type === 'structured') {
                    if (data.headers.length === 1 && data.headers[0] === 'No Headers Found') {
                        headerSelect.appendChild(new Option('No headers found or files are empty.', ''));
                        headerSelect.disabled = true;
                        headerMessage.textContent = 'No suitable headers found for comparison.';
                        return;
                    }
                    headerSelect.appendChild(new Option('Select a column...', ''));
                    data.headers.forEach(h => headerSelect.appendChild(new Option(h, h)));
                    headerSelect.disabled = false;
                    headerMessage.textContent = '';
                } else {
                    headerSelect.appendChild(new Option('Line Content', 'Line Content'));
                    headerSelect.disabled = true;
                    headerMessage.textContent = 'Comparison will be line-by-line for text files.';
                    checkBtn.disabled = false;
                }
            } catch (error) {
                showStatus('An error occurred fetching headers: ' + error.message, 'error');
            }
        }

        async function crossCheck() {
            const data = formData();
            if (headerSelect.value) {
                data.append('selectedColumn', headerSelect.value);
            }

            checkBtn.disabled = true;
            showStatus('Processing your files, please wait...', 'info');
            try {
                const response = await fetch('/cross-check', { method: 'POST', body: data });
                const result = await response.json();
                if (!response.ok) {
                    showStatus(result.detail, 'error');
                    return;
                }
                showStatus(result.message, 'success');
                displayResults(result);
            } catch (error) {
                showStatus('An error occurred: ' + error.message, 'error');
            } finally {
                checkBtn.disabled = false;
            }
        }

        function displayResults(result) {
            document.getElementById('results').classList.remove('hidden');
            document.getElementById('summary').textContent =
                `Compared ${result.total_file_a_rows} rows of ${result.file_a_name} against ${result.file_b_name} ` +
                `on '${result.comparison_column}': ${result.found_count} found, ${result.missing_count} missing.`;

            const downloads = document.getElementById('downloads');
            downloads.innerHTML = '';
            [['Download matched rows', result.matched_csv_filename],
             ['Download missing rows', result.missing_csv_filename]].forEach(([label, name]) => {
                if (!name) return;
                const link = document.createElement('a');
                link.className = 'btn';
                link.href = '/download-csv/' + encodeURIComponent(name);
                link.textContent = label;
                downloads.appendChild(link);
            });

            document.getElementById('missing-preview').textContent = result.missing_contents
                .map(item => typeof item === 'string' ? item : JSON.stringify(item))
                .join('\\n') || 'Nothing missing.';
        }

        fileA.addEventListener('change', loadHeaders);
        fileB.addEventListener('change', loadHeaders);
        headerSelect.addEventListener('change', () => {
            checkBtn.disabled = headerSelect.value === '';
        });
    </script>
</body>
</html>
"""


@app.get("/")
async def root(request: Request):
    """Serve the web interface or API info based on Accept header"""
    accept_header = request.headers.get("accept", "")
    if "text/html" in accept_header:
        return HTMLResponse(content=INDEX_HTML)

    return {
        "message": "File Cross-Checker API",
        "version": "1.0.0",
        "endpoints": {
            "documentation": "/docs",
            "health": "/health",
            "get_headers": "POST /get-headers",
            "cross_check": "POST /cross-check",
            "download": "GET /download-csv/{filename}"
        },
        "workflow": [
            "1. POST /get-headers with fileA and fileB to list comparable columns",
            "2. POST /cross-check with fileA, fileB and selectedColumn",
            "3. GET /download-csv/{filename} for the matched or missing rows (once, within 5 minutes)"
        ]
    }


# Include API router
app.include_router(api_router)


if __name__ == "__main__":
    uvicorn.run("main:app", host=HOST, port=PORT)
