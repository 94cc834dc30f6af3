import os
import io
import sys
import json
import socket
import traceback
from typing import Any, Dict, Optional

import pytz
from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_file
from werkzeug.utils import secure_filename

from database import get_db_connection, init_db
from data_paths import DATA_ROOT, ensure_data_root
from services.entities import EntityKind, parse_kind
from services.errors import BakeryDataError, ExportRequestError, ParseError
from services.exporter import CSV_MIMETYPE, TabularExport, export_payload
from services.field_normalizer import describe_fields
from services.importer import BatchStatus, ImportOptions, import_legacy_payload, import_payload
from services.storage import SqliteStorage

# Load environment variables from .env file
load_dotenv()

# --- App Initialization ---
DEFAULT_MAX_UPLOAD_MB = 10


def _max_upload_bytes() -> int:
    raw = os.environ.get('BAKERY_MAX_UPLOAD_MB', '').strip()
    try:
        megabytes = float(raw) if raw else DEFAULT_MAX_UPLOAD_MB
    except ValueError:
        megabytes = DEFAULT_MAX_UPLOAD_MB
    return int(megabytes * 1024 * 1024)


app = Flask(__name__)
app.config['JSON_SORT_KEYS'] = False
app.config['MAX_CONTENT_LENGTH'] = _max_upload_bytes()

_db_bootstrapped = False


@app.before_request
def _ensure_database_initialized():
    """Guarantee the SQLite schema exists before serving any request."""
    global _db_bootstrapped
    if _db_bootstrapped:
        return
    try:
        init_db()
        _db_bootstrapped = True
    except Exception as exc:  # pragma: no cover - retried on the next request
        app.logger.exception("Failed to initialize database before request: %s", exc)


ensure_data_root()

DATA_DIR = DATA_ROOT
SETTINGS_FILE = DATA_DIR / 'settings.json'


def read_json_file(file_path):
    if not os.path.exists(file_path) or os.path.getsize(file_path) == 0:
        return {}
    with open(file_path, 'r') as f:
        try:
            return json.load(f)
        except json.JSONDecodeError:
            app.logger.error(f"JSONDecodeError for {file_path}")
            return {}


def _resolve_timezone_setting() -> str:
    tz_value = os.environ.get('BAKERY_TIMEZONE', '').strip()
    if not tz_value:
        settings = read_json_file(SETTINGS_FILE)
        if isinstance(settings, dict):
            tz_value = (settings.get('timezone') or 'UTC').strip() or 'UTC'
        else:
            tz_value = 'UTC'
    try:
        pytz.timezone(tz_value)
    except pytz.UnknownTimeZoneError:
        app.logger.warning(f"Unknown timezone '{tz_value}', falling back to UTC")
        tz_value = 'UTC'
    return tz_value


def _current_user_id() -> int:
    candidate = request.headers.get('X-User-Id') or os.environ.get('BAKERY_DEFAULT_USER_ID') or '1'
    try:
        return int(str(candidate).strip())
    except ValueError:
        raise ValueError(f"Invalid user id '{candidate}'") from None


def _request_fields() -> Dict[str, Any]:
    fields: Dict[str, Any] = dict(request.args.items())
    fields.update(request.form.items())
    return fields


def _read_upload():
    """Return ``(payload, filename)`` from a multipart upload or the raw body."""
    if 'file' in request.files:
        file = request.files['file']
        if not file.filename:
            raise ValueError("No selected file")
        return file.stream.read(), secure_filename(file.filename) or None
    payload = request.get_data()
    if not payload:
        raise ValueError("No file part")
    return payload, None


def _error(message: str, status: int):
    return jsonify({"status": "error", "message": message}), status


def _import_response(result):
    status_code = 200 if result.status is BatchStatus.COMPLETED else 500
    return jsonify(result.to_envelope()), status_code


# --- Import ---

@app.route('/api/data/import', methods=['POST'])
def import_data():
    """Import a CSV or JSON file into the bakery tables."""
    conn = None
    try:
        payload, filename = _read_upload()
        fields = _request_fields()
        kind = parse_kind(fields.get('type'))
        options = ImportOptions.from_mapping(fields)
        user_id = _current_user_id()
        conn = get_db_connection()
        result = import_payload(
            SqliteStorage(conn),
            payload,
            kind,
            filename=filename,
            options=options,
            user_id=user_id,
            timezone=_resolve_timezone_setting(),
            source_system=fields.get('sourceSystem') or None,
        )
        app.logger.info(
            f"Import {result.status.value}: {result.processed} processed, "
            f"{result.skipped} skipped, {result.failed} failed"
        )
        return _import_response(result)
    except (ParseError, ValueError) as exc:
        app.logger.warning(f"Import rejected: {exc}")
        return _error(str(exc), 400)
    except BakeryDataError as exc:
        app.logger.error(f"Import failed: {exc}")
        return _error(str(exc), 500)
    except Exception as exc:
        app.logger.error(f"Error importing data: {exc}")
        app.logger.error(traceback.format_exc())
        return _error("An unexpected error occurred during the import.", 500)
    finally:
        if conn is not None:
            conn.close()


@app.route('/api/data/import/legacy', methods=['POST'])
def import_legacy_data():
    """Import a full JSON export from another bakery system."""
    conn = None
    try:
        payload, _ = _read_upload()
        fields = _request_fields()
        user_id = _current_user_id()
        conn = get_db_connection()
        result = import_legacy_payload(
            SqliteStorage(conn),
            payload,
            source_system=fields.get('sourceSystem') or 'bake-diary',
            options=ImportOptions.from_mapping(fields),
            user_id=user_id,
            timezone=_resolve_timezone_setting(),
        )
        app.logger.info(
            f"Legacy import from {result.source_system} {result.status.value}: "
            f"{result.processed} processed, {result.skipped} skipped, {result.failed} failed"
        )
        return _import_response(result)
    except (ParseError, ValueError) as exc:
        app.logger.warning(f"Legacy import rejected: {exc}")
        return _error(str(exc), 400)
    except BakeryDataError as exc:
        app.logger.error(f"Legacy import failed: {exc}")
        return _error(str(exc), 500)
    except Exception as exc:
        app.logger.error(f"Error importing legacy data: {exc}")
        app.logger.error(traceback.format_exc())
        return _error("An unexpected error occurred during the import.", 500)
    finally:
        if conn is not None:
            conn.close()


@app.route('/api/data/import/fields/<string:kind>', methods=['GET'])
def import_fields(kind):
    """List the canonical fields of ``kind`` and the headers accepted for each."""
    try:
        entity_kind: Optional[EntityKind] = parse_kind(kind)
    except ValueError as exc:
        return _error(str(exc), 400)
    if entity_kind is None:
        return _error("An entity type is required", 400)
    return jsonify({"status": "success", "type": entity_kind.value, "fields": describe_fields(entity_kind)}), 200


# --- Export ---

def _export(kind, fmt):
    conn = None
    try:
        user_id = _current_user_id()
        conn = get_db_connection()
        exported = export_payload(
            SqliteStorage(conn),
            kind,
            fmt,
            user_id=user_id,
            timezone=_resolve_timezone_setting(),
        )
    except (ExportRequestError, ValueError) as exc:
        return _error(str(exc), 400)
    except BakeryDataError as exc:
        app.logger.error(f"Export failed: {exc}")
        return _error(str(exc), 500)
    except Exception as exc:
        app.logger.error(f"Error exporting data: {exc}")
        app.logger.error(traceback.format_exc())
        return _error("Failed to export data.", 500)
    finally:
        if conn is not None:
            conn.close()

    if isinstance(exported, TabularExport):
        return send_file(
            io.BytesIO(exported.to_csv().encode('utf-8')),
            mimetype=CSV_MIMETYPE,
            as_attachment=True,
            download_name=exported.filename,
        )
    return jsonify(exported), 200


@app.route('/api/data/export', methods=['GET'])
def export_data():
    """Export a JSON snapshot or a single entity as CSV."""
    return _export(request.args.get('type', 'all'), request.args.get('format', 'json'))


@app.route('/api/data/export/<string:kind>.csv', methods=['GET'])
def export_csv(kind):
    return _export(kind, 'csv')


@app.errorhandler(413)
def _upload_too_large(_exc):
    return _error("Uploaded file is too large.", 413)


def is_port_in_use(port):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        return s.connect_ex(('127.0.0.1', port)) == 0


def main():
    port = int(os.environ.get('BAKERY_PORT', '5002'))
    if is_port_in_use(port):
        print(f"Port {port} is already in use.")
        sys.exit(1)
    print(f"Port {port} is free. Starting new server.")
    app.run(host='0.0.0.0', port=port, debug=False)


if __name__ == '__main__':
    init_db()
    main()
