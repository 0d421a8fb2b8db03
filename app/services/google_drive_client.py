import json
from typing import Any
from urllib import error, parse, request
from uuid import uuid4

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
DOCUMENT_MIME_TYPE = "application/vnd.google-apps.document"


class GoogleDriveError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GoogleDriveClient:
    def __init__(
        self,
        *,
        access_token: str,
        refresh_token: str = "",
        client_id: str = "",
        client_secret: str = "",
        timeout_seconds: float = 15.0,
        api_base_url: str = "https://www.googleapis.com/drive/v3",
        upload_base_url: str = "https://www.googleapis.com/upload/drive/v3",
        oauth_token_url: str = "https://oauth2.googleapis.com/token",
    ) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout_seconds = timeout_seconds
        self.api_base_url = api_base_url.rstrip("/")
        self.upload_base_url = upload_base_url.rstrip("/")
        self.oauth_token_url = oauth_token_url
        self.token_refreshed = False

    def ensure_folder(self, *, folder_name: str, folder_id: str | None = None) -> str:
        if folder_id:
            try:
                folder = self._request_json(
                    "GET",
                    f"{self.api_base_url}/files/{parse.quote(folder_id)}?"
                    + parse.urlencode({"fields": "id,name,trashed"}),
                )
            except GoogleDriveError as exc:
                if exc.status_code not in {403, 404}:
                    raise
            else:
                if not folder.get("trashed"):
                    return folder_id

        escaped_name = folder_name.replace("\\", "\\\\").replace("'", "\\'")
        query = parse.urlencode(
            {
                "q": (
                    f"name='{escaped_name}' and mimeType='{FOLDER_MIME_TYPE}' "
                    "and trashed=false"
                ),
                "fields": "files(id,name)",
                "spaces": "drive",
            },
        )
        search = self._request_json("GET", f"{self.api_base_url}/files?{query}")
        files = search.get("files")
        if isinstance(files, list):
            for item in files:
                if isinstance(item, dict) and isinstance(item.get("id"), str):
                    return item["id"]

        created = self._request_json(
            "POST",
            f"{self.api_base_url}/files?" + parse.urlencode({"fields": "id"}),
            body=json.dumps({"name": folder_name, "mimeType": FOLDER_MIME_TYPE}).encode("utf-8"),
            content_type="application/json",
        )
        return _require_string(created, "id")

    def create_document(self, *, name: str, html: str, folder_id: str) -> dict[str, str]:
        boundary = f"memo-{uuid4().hex}"
        metadata = {"name": name, "mimeType": DOCUMENT_MIME_TYPE, "parents": [folder_id]}
        body = (
            f"--{boundary}\r\n"
            "Content-Type: application/json; charset=UTF-8\r\n\r\n"
            f"{json.dumps(metadata)}\r\n"
            f"--{boundary}\r\n"
            "Content-Type: text/html; charset=UTF-8\r\n\r\n"
            f"{html}\r\n"
            f"--{boundary}--\r\n"
        ).encode("utf-8")
        query = parse.urlencode({"uploadType": "multipart", "fields": "id,webViewLink"})
        created = self._request_json(
            "POST",
            f"{self.upload_base_url}/files?{query}",
            body=body,
            content_type=f"multipart/related; boundary={boundary}",
        )
        return {
            "id": _require_string(created, "id"),
            "web_view_link": _require_string(created, "webViewLink"),
        }

    def _request_json(
        self,
        method: str,
        url: str,
        *,
        body: bytes | None = None,
        content_type: str | None = None,
        allow_refresh: bool = True,
    ) -> dict[str, Any]:
        if not self.access_token and self._can_refresh_access_token():
            self._refresh_access_token()

        headers = {"Authorization": f"Bearer {self.access_token}"}
        if content_type:
            headers["Content-Type"] = content_type
        req = request.Request(url, data=body, method=method, headers=headers)

        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response_body = response.read()
        except TimeoutError as exc:
            raise GoogleDriveError("Google Drive API request timed out.") from exc
        except error.HTTPError as exc:
            if exc.code == 401 and allow_refresh and self._can_refresh_access_token():
                self._refresh_access_token()
                return self._request_json(
                    method,
                    url,
                    body=body,
                    content_type=content_type,
                    allow_refresh=False,
                )
            error_body = exc.read().decode("utf-8", errors="ignore")
            raise GoogleDriveError(
                f"Google Drive API HTTP {exc.code}: {error_body or 'empty response body'}",
                status_code=exc.code,
            ) from exc
        except error.URLError as exc:
            raise GoogleDriveError(f"Google Drive API connection error: {exc.reason}") from exc

        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise GoogleDriveError("Google Drive API returned invalid JSON.") from exc

        if not isinstance(parsed_body, dict):
            raise GoogleDriveError("Google Drive API response is not a JSON object.")
        return parsed_body

    def _can_refresh_access_token(self) -> bool:
        return bool(
            self.refresh_token.strip()
            and self.client_id.strip()
            and self.client_secret.strip()
        )

    def _refresh_access_token(self) -> None:
        body = parse.urlencode(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": self.refresh_token,
                "grant_type": "refresh_token",
            },
        ).encode("utf-8")
        req = request.Request(
            self.oauth_token_url,
            data=body,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response_body = response.read()
        except TimeoutError as exc:
            raise GoogleDriveError("Google OAuth refresh request timed out.") from exc
        except error.HTTPError as exc:
            body_text = exc.read().decode("utf-8", errors="ignore")
            raise GoogleDriveError(
                f"Google OAuth refresh HTTP {exc.code}: {body_text or 'empty response body'}",
                status_code=exc.code,
            ) from exc
        except error.URLError as exc:
            raise GoogleDriveError(f"Google OAuth refresh connection error: {exc.reason}") from exc

        try:
            payload = json.loads(response_body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise GoogleDriveError("Google OAuth refresh returned invalid JSON.") from exc

        if not isinstance(payload, dict):
            raise GoogleDriveError("Google OAuth refresh response is not a JSON object.")
        new_access_token = payload.get("access_token")
        if not isinstance(new_access_token, str) or not new_access_token.strip():
            raise GoogleDriveError("Google OAuth refresh did not include access_token.")
        self.access_token = new_access_token.strip()
        self.token_refreshed = True
        refreshed_refresh_token = payload.get("refresh_token")
        if isinstance(refreshed_refresh_token, str) and refreshed_refresh_token.strip():
            self.refresh_token = refreshed_refresh_token.strip()


def _require_string(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise GoogleDriveError(f"Google Drive API response missing {key}.")
    return value
