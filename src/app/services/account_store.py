"""
계정 레코드 저장소 구현

모든 구현은 compare_and_swap 으로 버전 조건부 기록을 제공합니다.
- InMemoryAccountStore: 테스트/로컬 개발용
- SupabaseAccountStore: Supabase(PostgREST) 테이블, version 컬럼 기반
- FirestoreRestAccountStore: Firestore REST API, updateTime precondition 기반
"""
from __future__ import annotations

import asyncio
import copy
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx
from postgrest.exceptions import APIError
from supabase import Client

from core.interfaces import IAccountStore
from core.ledger_models import Account, StoredAccount

logger = logging.getLogger(__name__)


class AccountStoreError(RuntimeError):
    """저장소 영구 오류 (재시도 불가)"""

    def __init__(self, message: str, account_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.account_id = account_id


class StoreUnavailableError(AccountStoreError):
    """저장소 일시 오류 (타임아웃, 5xx)"""


class VersionConflictError(AccountStoreError):
    """조건부 기록 시 버전 불일치"""

    def __init__(self, account_id: str, expected_version: Any, actual_version: Any = None) -> None:
        super().__init__(
            f"version conflict for {account_id}: expected={expected_version!r} actual={actual_version!r}",
            account_id,
        )
        self.expected_version = expected_version
        self.actual_version = actual_version


class InMemoryAccountStore(IAccountStore):
    """프로세스 메모리 저장소 (정수 버전)"""

    def __init__(self, latency: float = 0.0):
        self._documents: Dict[str, Tuple[int, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        self.latency = latency
        self.write_count = 0
        self.events: List[Dict[str, Any]] = []

    async def read(self, account_id: str) -> StoredAccount:
        async with self._lock:
            entry = self._documents.get(account_id)
            entry = copy.deepcopy(entry) if entry else None

        # 읽기와 기록 사이에 다른 작업이 끼어들 수 있도록 제어권 양보
        await asyncio.sleep(self.latency)

        if entry is None:
            return StoredAccount(Account.empty(account_id), None)
        version, document = entry
        return StoredAccount(Account.from_document(account_id, document), version)

    async def compare_and_swap(self, account_id: str, expected_version: Any, account: Account) -> int:
        async with self._lock:
            current = self._documents.get(account_id)
            current_version = current[0] if current else None
            if current_version != expected_version:
                raise VersionConflictError(account_id, expected_version, current_version)

            new_version = (current_version or 0) + 1
            self._documents[account_id] = (new_version, account.to_document())
            self.write_count += 1
            return new_version

    async def delete(self, account_id: str) -> bool:
        async with self._lock:
            return self._documents.pop(account_id, None) is not None

    async def log_system_event(self, event_type: str, event_data: Dict[str, Any], account_id: str = None) -> bool:
        self.events.append({"account_id": account_id, "event_type": event_type, "event_data": event_data})
        return True

    def document(self, account_id: str) -> Optional[Dict[str, Any]]:
        """저장된 원본 문서 조회 (진단용)"""
        entry = self._documents.get(account_id)
        return copy.deepcopy(entry[1]) if entry else None


class SupabaseAccountStore(IAccountStore):
    """Supabase 테이블 저장소

    행 구조: account_id(PK), version(int), document(jsonb), updated_at
    """

    UNIQUE_VIOLATION = "23505"

    def __init__(
        self,
        client: Client,
        table: str = "credit_accounts",
        logs_table: str = "system_logs",
    ):
        self.client = client
        self.table = table
        self.logs_table = logs_table

    async def read(self, account_id: str) -> StoredAccount:
        try:
            result = (
                self.client.table(self.table)
                .select('account_id, version, document')
                .eq('account_id', account_id)
                .limit(1)
                .execute()
            )
        except APIError as e:
            raise self._classify(e, account_id) from e
        except httpx.HTTPError as e:
            raise StoreUnavailableError(f"계정 조회 실패: {e}", account_id) from e

        if not result.data:
            return StoredAccount(Account.empty(account_id), None)

        row = result.data[0]
        return StoredAccount(Account.from_document(account_id, row.get('document')), row.get('version'))

    async def compare_and_swap(self, account_id: str, expected_version: Any, account: Account) -> int:
        new_version = (expected_version or 0) + 1
        row = {
            'account_id': account_id,
            'version': new_version,
            'document': account.to_document(),
            'updated_at': datetime.now(timezone.utc).isoformat(),
        }

        try:
            if expected_version is None:
                result = self.client.table(self.table).insert(row).execute()
            else:
                result = (
                    self.client.table(self.table)
                    .update(row)
                    .eq('account_id', account_id)
                    .eq('version', expected_version)
                    .execute()
                )
        except APIError as e:
            if getattr(e, 'code', None) == self.UNIQUE_VIOLATION:
                raise VersionConflictError(account_id, expected_version) from e
            raise self._classify(e, account_id) from e
        except httpx.HTTPError as e:
            raise StoreUnavailableError(f"계정 기록 실패: {e}", account_id) from e

        if not result.data:
            # 조건에 맞는 행이 없으면 다른 작업이 먼저 기록한 것
            raise VersionConflictError(account_id, expected_version)
        return new_version

    async def delete(self, account_id: str) -> bool:
        try:
            result = self.client.table(self.table).delete().eq('account_id', account_id).execute()
        except APIError as e:
            raise self._classify(e, account_id) from e
        except httpx.HTTPError as e:
            raise StoreUnavailableError(f"계정 삭제 실패: {e}", account_id) from e
        return bool(result.data)

    async def log_system_event(self, event_type: str, event_data: Dict[str, Any], account_id: str = None) -> bool:
        """시스템 이벤트 로그 기록"""
        try:
            log_data = {
                'user_id': account_id,
                'event_type': event_type,
                'event_data': event_data or {},
            }
            result = self.client.table(self.logs_table).insert(log_data).execute()
            return len(result.data) > 0
        except Exception as e:
            logger.error(f"시스템 로그 기록 실패: {e}")
            return False

    @staticmethod
    def _classify(error: APIError, account_id: str) -> AccountStoreError:
        code = str(getattr(error, 'code', '') or '')
        message = getattr(error, 'message', None) or str(error)
        # 연결/타임아웃 계열 (PostgREST PGRST0xx, Postgres 08xxx/57014)
        if code.startswith('PGRST0') or code.startswith('08') or code == '57014':
            return StoreUnavailableError(f"Supabase 일시 오류: {message}", account_id)
        return AccountStoreError(f"Supabase 오류({code}): {message}", account_id)


def encode_firestore_value(value: Any) -> Dict[str, Any]:
    """Python 값을 Firestore typed value 로 변환"""
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, datetime):
        return {"timestampValue": value.isoformat()}
    if isinstance(value, dict):
        return {"mapValue": {"fields": encode_firestore_fields(value)}}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_firestore_value(item) for item in value]}}
    return {"stringValue": str(value)}


def encode_firestore_fields(document: Dict[str, Any]) -> Dict[str, Any]:
    return {key: encode_firestore_value(value) for key, value in document.items()}


def decode_firestore_value(value: Dict[str, Any]) -> Any:
    """Firestore typed value 를 Python 값으로 변환"""
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "stringValue" in value:
        return value["stringValue"]
    if "timestampValue" in value:
        return value["timestampValue"]
    if "mapValue" in value:
        return decode_firestore_fields(value["mapValue"].get("fields") or {})
    if "arrayValue" in value:
        return [decode_firestore_value(item) for item in value["arrayValue"].get("values") or []]
    return None


def decode_firestore_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {key: decode_firestore_value(value) for key, value in fields.items()}


class FirestoreRestAccountStore(IAccountStore):
    """Firestore REST 저장소 (문서 updateTime 을 버전으로 사용)"""

    CONFLICT_STATUSES = {"FAILED_PRECONDITION", "ALREADY_EXISTS", "ABORTED"}

    def __init__(
        self,
        project_id: str,
        api_key: str,
        collection: str = "users",
        timeout: float = 10.0,
        base_url: str = "https://firestore.googleapis.com/v1",
    ):
        if not project_id or not api_key:
            raise ValueError("FIREBASE_PROJECT_ID 또는 FIREBASE_API_KEY가 설정되지 않았습니다.")

        self.api_key = api_key
        self.collection = collection
        self.timeout = timeout
        self.documents_url = f"{base_url.rstrip('/')}/projects/{project_id}/databases/(default)/documents"

    def _document_url(self, account_id: str) -> str:
        return f"{self.documents_url}/{self.collection}/{account_id}"

    async def _send(
        self,
        method: str,
        url: str,
        account_id: str,
        params: Optional[List[Tuple[str, str]]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        # updateMask.fieldPaths 처럼 반복되는 쿼리 키가 있어 튜플 목록으로 전달
        query = [("key", self.api_key), *(params or [])]
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, params=query, json=json)
        except httpx.RequestError as exc:
            logger.warning("[LEDGER] Firestore network error: %s %s error=%s", method, account_id, exc)
            raise StoreUnavailableError(f"Firestore 네트워크 오류: {exc}", account_id) from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise StoreUnavailableError(
                f"Firestore 일시 오류: status={response.status_code}",
                account_id,
            )
        return response

    async def read(self, account_id: str) -> StoredAccount:
        response = await self._send("GET", self._document_url(account_id), account_id)
        if response.status_code == 404:
            return StoredAccount(Account.empty(account_id), None)
        if response.status_code >= 400:
            raise AccountStoreError(
                f"Firestore 조회 실패: status={response.status_code} body={response.text}",
                account_id,
            )

        payload = response.json()
        document = decode_firestore_fields(payload.get("fields") or {})
        return StoredAccount(Account.from_document(account_id, document), payload.get("updateTime"))

    async def compare_and_swap(self, account_id: str, expected_version: Any, account: Account) -> str:
        if expected_version is None:
            precondition = ("currentDocument.exists", "false")
        else:
            precondition = ("currentDocument.updateTime", expected_version)

        document = account.to_document()
        # 원장 필드만 갱신하고 문서의 다른 필드(프로필 등)는 유지
        update_mask = [("updateMask.fieldPaths", key) for key in document]

        response = await self._send(
            "PATCH",
            self._document_url(account_id),
            account_id,
            params=[precondition, *update_mask],
            json={"fields": encode_firestore_fields(document)},
        )

        if response.status_code >= 400:
            if self._is_conflict(response, expected_version):
                raise VersionConflictError(account_id, expected_version)
            raise AccountStoreError(
                f"Firestore 기록 실패: status={response.status_code} body={response.text}",
                account_id,
            )

        return response.json().get("updateTime")

    async def delete(self, account_id: str) -> bool:
        response = await self._send("DELETE", self._document_url(account_id), account_id)
        if response.status_code == 404:
            return False
        if response.status_code >= 400:
            raise AccountStoreError(f"Firestore 삭제 실패: status={response.status_code}", account_id)
        return True

    async def log_system_event(self, event_type: str, event_data: Dict[str, Any], account_id: str = None) -> bool:
        """system_logs 컬렉션에 이벤트 기록"""
        document = {
            "user_id": account_id,
            "event_type": event_type,
            "event_data": event_data or {},
            "created_at": datetime.now(timezone.utc),
        }
        try:
            response = await self._send(
                "POST",
                f"{self.documents_url}/system_logs",
                account_id or "-",
                json={"fields": encode_firestore_fields(document)},
            )
            return response.status_code < 400
        except AccountStoreError as e:
            logger.error(f"시스템 로그 기록 실패: {e}")
            return False

    def _is_conflict(self, response: httpx.Response, expected_version: Any) -> bool:
        if response.status_code in (409, 412):
            return True
        # updateTime precondition 대상 문서가 삭제된 경우
        if response.status_code == 404 and expected_version is not None:
            return True
        try:
            status = (response.json().get("error") or {}).get("status")
        except ValueError:
            return False
        return status in self.CONFLICT_STATUSES
