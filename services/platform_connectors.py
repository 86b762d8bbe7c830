"""
Connectors for the chat, mail and document platforms a firm can link.

Every connector turns provider errors into empty results and logs them,
so a failing platform never breaks a cross-platform search.
"""
import os
import base64
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from models import db, Integration
from utils import parse_datetime

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = int(os.getenv('HTTP_TIMEOUT', 30))

MIME_TYPES = {
    'pdf': 'application/pdf',
    'doc': 'application/msword',
    'docx': 'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
    'xls': 'application/vnd.ms-excel',
    'xlsx': 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
    'ppt': 'application/vnd.ms-powerpoint',
    'pptx': 'application/vnd.openxmlformats-officedocument.presentationml.presentation',
    'txt': 'text/plain',
    'rtf': 'application/rtf',
}

CONNECTION_ERRORS = (requests.RequestException, ValueError, KeyError, TypeError)


def _in_range(moment: Optional[datetime], date_range: Optional[Dict[str, datetime]]) -> bool:
    if not date_range or moment is None:
        return True
    start, end = date_range.get('start'), date_range.get('end')
    if start and moment < start:
        return False
    if end and moment > end:
        return False
    return True


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return parse_datetime(value) if value else None


class PlatformConnector:
    """Interface for platform connectors"""
    platform = None
    kind = 'messages'  # or 'documents'

    def __init__(self, credentials: Optional[Dict[str, Any]] = None):
        self.credentials = credentials or {}

    def test_connection(self) -> bool:
        raise NotImplementedError

    def search(self, query: str, limit: int = 20, date_range: Optional[Dict[str, datetime]] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def _get(self, url, **kwargs):
        res = requests.get(url, headers=self.headers(), timeout=HTTP_TIMEOUT, **kwargs)
        res.raise_for_status()
        return res

    def headers(self) -> Dict[str, str]:
        return {}


class SlackConnector(PlatformConnector):
    platform = 'slack'
    base_url = 'https://slack.com/api'

    def headers(self):
        token = self.credentials.get('user_token') or self.credentials.get('bot_token') or ''
        return {'Authorization': f"Bearer {token}", 'Content-Type': 'application/json; charset=utf-8'}

    def _check(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if not data.get('ok'):
            raise ValueError(f"Slack API error: {data.get('error', 'unknown')}")
        return data

    def test_connection(self) -> bool:
        try:
            res = requests.post(f"{self.base_url}/auth.test", headers=self.headers(), timeout=HTTP_TIMEOUT)
            return bool(res.json().get('ok'))
        except CONNECTION_ERRORS as e:
            logger.error(f"Slack connection test failed: {e}")
            return False

    def _to_message(self, m: Dict[str, Any]) -> Dict[str, Any]:
        channel = m.get('channel') or {}
        ts = m.get('ts') or '0'
        return {
            'id': ts,
            'platform': self.platform,
            'content': m.get('text', ''),
            'author': m.get('username') or m.get('user') or 'unknown',
            'timestamp': datetime.utcfromtimestamp(float(ts)).isoformat(),
            'channel': channel.get('name') if isinstance(channel, dict) else channel,
            'thread_id': m.get('thread_ts'),
            'metadata': {
                'team': m.get('team'),
                'channel_id': channel.get('id') if isinstance(channel, dict) else channel,
                'permalink': m.get('permalink'),
            },
        }

    def search(self, query, limit=20, date_range=None):
        terms = query
        if date_range and date_range.get('start'):
            terms += f" after:{date_range['start'].strftime('%Y-%m-%d')}"
        if date_range and date_range.get('end'):
            terms += f" before:{date_range['end'].strftime('%Y-%m-%d')}"
        try:
            data = self._check(self._get(f"{self.base_url}/search.messages",
                                         params={'query': terms, 'count': limit}).json())
            matches = (data.get('messages') or {}).get('matches') or []
            return [self._to_message(m) for m in matches][:limit]
        except CONNECTION_ERRORS as e:
            logger.error(f"Slack search failed: {e}")
            return []

    def get_channel_messages(self, channel_id, limit=100, oldest=None):
        payload = {'channel': channel_id, 'limit': limit}
        if oldest:
            payload['oldest'] = str(oldest.timestamp()) if isinstance(oldest, datetime) else str(oldest)
        try:
            res = requests.post(f"{self.base_url}/conversations.history", headers=self.headers(),
                                json=payload, timeout=HTTP_TIMEOUT)
            data = self._check(res.json())
            messages = []
            for m in data.get('messages') or []:
                m = dict(m, channel={'id': channel_id, 'name': channel_id})
                messages.append(self._to_message(m))
            return messages
        except CONNECTION_ERRORS as e:
            logger.error(f"Slack history failed for {channel_id}: {e}")
            return []

    def list_channels(self):
        try:
            data = self._check(self._get(f"{self.base_url}/conversations.list",
                                         params={'types': 'public_channel,private_channel'}).json())
            return [{'id': c['id'], 'name': c.get('name')} for c in data.get('channels') or []]
        except CONNECTION_ERRORS as e:
            logger.error(f"Slack channel list failed: {e}")
            return []


class DiscordConnector(PlatformConnector):
    platform = 'discord'
    base_url = 'https://discord.com/api/v10'

    def headers(self):
        return {'Authorization': f"Bot {self.credentials.get('bot_token', '')}"}

    def test_connection(self) -> bool:
        try:
            self._get(f"{self.base_url}/users/@me")
            return True
        except CONNECTION_ERRORS as e:
            logger.error(f"Discord connection test failed: {e}")
            return False

    def list_channels(self):
        guild_id = self.credentials.get('guild_id')
        if not guild_id:
            return []
        try:
            channels = self._get(f"{self.base_url}/guilds/{guild_id}/channels").json()
            return [{'id': c['id'], 'name': c.get('name')} for c in channels if c.get('type') == 0]
        except CONNECTION_ERRORS as e:
            logger.error(f"Discord channel list failed: {e}")
            return []

    def get_channel_messages(self, channel_id, limit=50, after=None, channel_name=None):
        params = {'limit': min(limit, 100)}
        if after:
            params['after'] = after
        try:
            items = self._get(f"{self.base_url}/channels/{channel_id}/messages", params=params).json()
        except CONNECTION_ERRORS as e:
            logger.error(f"Discord messages failed for {channel_id}: {e}")
            return []
        messages = []
        for m in items:
            author = m.get('author') or {}
            messages.append({
                'id': m.get('id'),
                'platform': self.platform,
                'content': m.get('content', ''),
                'author': author.get('username', 'unknown'),
                'timestamp': m.get('timestamp'),
                'channel': channel_name or channel_id,
                'thread_id': (m.get('message_reference') or {}).get('message_id'),
                'metadata': {'channel_id': channel_id, 'guild_id': self.credentials.get('guild_id')},
            })
        return messages

    def search(self, query, limit=100, date_range=None):
        needle = (query or '').lower()
        results = []
        for channel in self.list_channels():
            for message in self.get_channel_messages(channel['id'], limit=100, channel_name=channel['name']):
                if needle in (message['content'] or '').lower() and _in_range(_parse_iso(message['timestamp']), date_range):
                    results.append(message)
                    if len(results) >= limit:
                        return results
        return results


class GoogleDriveConnector(PlatformConnector):
    platform = 'google_drive'
    kind = 'documents'
    base_url = 'https://www.googleapis.com/drive/v3'

    def headers(self):
        token = self.credentials.get('access_token')
        return {'Authorization': f"Bearer {token}"} if token else {}

    def _auth_params(self):
        key = self.credentials.get('api_key')
        return {'key': key} if key and not self.credentials.get('access_token') else {}

    def test_connection(self) -> bool:
        try:
            self._get(f"{self.base_url}/about", params=dict(self._auth_params(), fields='user'))
            return True
        except CONNECTION_ERRORS as e:
            logger.error(f"Google Drive connection test failed: {e}")
            return False

    def build_query(self, query, file_types=None, date_range=None):
        escaped = (query or '').replace('\\', '\\\\').replace("'", "\\'")
        clauses = [f"(name contains '{escaped}' or fullText contains '{escaped}')", 'trashed = false']
        mimes = [MIME_TYPES[t] for t in (file_types or []) if t in MIME_TYPES]
        if mimes:
            clauses.append('(' + ' or '.join(f"mimeType = '{m}'" for m in mimes) + ')')
        if date_range and date_range.get('start'):
            clauses.append(f"modifiedTime >= '{date_range['start'].strftime('%Y-%m-%dT%H:%M:%S')}'")
        if date_range and date_range.get('end'):
            clauses.append(f"modifiedTime <= '{date_range['end'].strftime('%Y-%m-%dT%H:%M:%S')}'")
        return ' and '.join(clauses)

    def search(self, query, limit=20, date_range=None, file_types=None):
        params = dict(self._auth_params())
        params.update({
            'q': self.build_query(query, file_types, date_range),
            'pageSize': limit,
            'fields': 'files(id,name,mimeType,size,modifiedTime,webViewLink,owners)',
        })
        try:
            files = self._get(f"{self.base_url}/files", params=params).json().get('files') or []
        except CONNECTION_ERRORS as e:
            logger.error(f"Google Drive search failed: {e}")
            return []
        return [{
            'id': f['id'],
            'platform': self.platform,
            'name': f.get('name'),
            'mime_type': f.get('mimeType'),
            'size': int(f['size']) if f.get('size') else None,
            'url': f.get('webViewLink'),
            'modified_at': f.get('modifiedTime'),
            'metadata': {'owners': [o.get('emailAddress') for o in f.get('owners') or []]},
        } for f in files]

    def get_document_content(self, file_id):
        try:
            return self._get(f"{self.base_url}/files/{file_id}/export",
                             params=dict(self._auth_params(), mimeType='text/plain')).text
        except requests.RequestException:
            try:
                return self._get(f"{self.base_url}/files/{file_id}",
                                 params=dict(self._auth_params(), alt='media')).text
            except requests.RequestException as e:
                logger.error(f"Google Drive content failed for {file_id}: {e}")
                return None


class OneDriveConnector(PlatformConnector):
    platform = 'onedrive'
    kind = 'documents'
    base_url = 'https://graph.microsoft.com/v1.0'

    def headers(self):
        return {'Authorization': f"Bearer {self.credentials.get('access_token', '')}"}

    def test_connection(self) -> bool:
        try:
            self._get(f"{self.base_url}/me/drive")
            return True
        except CONNECTION_ERRORS as e:
            logger.error(f"OneDrive connection test failed: {e}")
            return False

    def search(self, query, limit=20, date_range=None, file_types=None):
        escaped = (query or '').replace("'", "''")
        params = {'$top': limit, '$select': 'id,name,size,webUrl,lastModifiedDateTime,file'}
        try:
            items = self._get(f"{self.base_url}/me/drive/root/search(q='{escaped}')", params=params).json().get('value') or []
        except CONNECTION_ERRORS as e:
            logger.error(f"OneDrive search failed: {e}")
            return []
        wanted = {t.lower() for t in file_types or []}
        documents = []
        for item in items:
            name = item.get('name') or ''
            ext = name.rsplit('.', 1)[-1].lower() if '.' in name else ''
            if wanted and ext not in wanted:
                continue
            modified = item.get('lastModifiedDateTime')
            if not _in_range(_parse_iso(modified), date_range):
                continue
            documents.append({
                'id': item['id'],
                'platform': self.platform,
                'name': name,
                'mime_type': (item.get('file') or {}).get('mimeType'),
                'size': item.get('size'),
                'url': item.get('webUrl'),
                'modified_at': modified,
                'metadata': {},
            })
        return documents

    def get_document_content(self, item_id):
        try:
            return self._get(f"{self.base_url}/me/drive/items/{item_id}/content").text
        except requests.RequestException as e:
            logger.error(f"OneDrive content failed for {item_id}: {e}")
            return None


class ZoomConnector(PlatformConnector):
    platform = 'zoom'
    kind = 'documents'
    base_url = 'https://api.zoom.us/v2'

    def headers(self):
        return {'Authorization': f"Bearer {self.credentials.get('access_token', '')}"}

    def test_connection(self) -> bool:
        try:
            self._get(f"{self.base_url}/users/me")
            return True
        except CONNECTION_ERRORS as e:
            logger.error(f"Zoom connection test failed: {e}")
            return False

    def list_recordings(self, from_date=None, to_date=None, page_size=30):
        params = {'page_size': page_size}
        if from_date:
            params['from'] = from_date.strftime('%Y-%m-%d')
        if to_date:
            params['to'] = to_date.strftime('%Y-%m-%d')
        try:
            meetings = self._get(f"{self.base_url}/users/me/recordings", params=params).json().get('meetings') or []
        except CONNECTION_ERRORS as e:
            logger.error(f"Zoom recordings failed: {e}")
            return []
        recordings = []
        for meeting in meetings:
            for f in meeting.get('recording_files') or []:
                recordings.append({
                    'id': f.get('id'),
                    'platform': self.platform,
                    'name': f"{meeting.get('topic', 'Meeting')} ({f.get('file_type', 'file')})",
                    'mime_type': f.get('file_type'),
                    'size': f.get('file_size'),
                    'url': f.get('play_url') or f.get('download_url'),
                    'modified_at': f.get('recording_start') or meeting.get('start_time'),
                    'metadata': {'meeting_id': meeting.get('id'), 'topic': meeting.get('topic')},
                })
        return recordings

    def get_transcript(self, meeting_id):
        try:
            data = self._get(f"{self.base_url}/meetings/{meeting_id}/recordings").json()
            for f in data.get('recording_files') or []:
                if f.get('file_type') == 'TRANSCRIPT' and f.get('download_url'):
                    return self._get(f['download_url']).text
        except CONNECTION_ERRORS as e:
            logger.error(f"Zoom transcript failed for {meeting_id}: {e}")
        return None

    def search(self, query, limit=20, date_range=None):
        date_range = date_range or {}
        needle = (query or '').lower()
        matches = [r for r in self.list_recordings(date_range.get('start'), date_range.get('end'))
                   if needle in (r['metadata'].get('topic') or '').lower()]
        return matches[:limit]


class GmailConnector(PlatformConnector):
    platform = 'gmail'
    base_url = 'https://gmail.googleapis.com/gmail/v1/users/me'

    def headers(self):
        return {'Authorization': f"Bearer {self.credentials.get('access_token', '')}"}

    def test_connection(self) -> bool:
        try:
            self._get(f"{self.base_url}/profile")
            return True
        except CONNECTION_ERRORS as e:
            logger.error(f"Gmail connection test failed: {e}")
            return False

    @staticmethod
    def decode_body(payload: Dict[str, Any]) -> str:
        data = (payload.get('body') or {}).get('data')
        if not data:
            for part in payload.get('parts') or []:
                if part.get('mimeType') == 'text/plain' and (part.get('body') or {}).get('data'):
                    data = part['body']['data']
                    break
        if not data:
            return ''
        padded = data + '=' * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded.encode('ascii')).decode('utf-8', errors='replace')

    def search(self, query, limit=20, date_range=None):
        q = query
        if date_range and date_range.get('start'):
            q += f" after:{date_range['start'].strftime('%Y/%m/%d')}"
        if date_range and date_range.get('end'):
            q += f" before:{date_range['end'].strftime('%Y/%m/%d')}"
        try:
            listing = self._get(f"{self.base_url}/messages", params={'q': q, 'maxResults': limit}).json()
        except CONNECTION_ERRORS as e:
            logger.error(f"Gmail search failed: {e}")
            return []
        messages = []
        for ref in listing.get('messages') or []:
            try:
                detail = self._get(f"{self.base_url}/messages/{ref['id']}", params={'format': 'full'}).json()
            except CONNECTION_ERRORS as e:
                logger.error(f"Gmail message {ref.get('id')} failed: {e}")
                continue
            payload = detail.get('payload') or {}
            headers = {h.get('name', '').lower(): h.get('value') for h in payload.get('headers') or []}
            internal = detail.get('internalDate')
            messages.append({
                'id': detail.get('id'),
                'platform': self.platform,
                'content': self.decode_body(payload) or detail.get('snippet', ''),
                'author': headers.get('from', 'unknown'),
                'timestamp': datetime.utcfromtimestamp(int(internal) / 1000.0).isoformat() if internal else None,
                'channel': 'inbox',
                'thread_id': detail.get('threadId'),
                'metadata': {'subject': headers.get('subject'), 'labels': detail.get('labelIds') or []},
            })
        return messages


CONNECTORS = {
    'slack': SlackConnector,
    'discord': DiscordConnector,
    'google_drive': GoogleDriveConnector,
    'onedrive': OneDriveConnector,
    'zoom': ZoomConnector,
    'gmail': GmailConnector,
}

CREDENTIAL_KEYS = ('bot_token', 'user_token', 'workspace_id', 'guild_id', 'access_token', 'api_key', 'api_secret')


class PlatformManager:
    """Firm-level registry of linked platforms, backed by Integration rows."""

    def __init__(self, firm_id: int):
        self.firm_id = firm_id

    def _integration(self, platform: str) -> Optional[Integration]:
        return Integration.query.filter_by(firm_id=self.firm_id, type='platform', provider=platform).first()

    def connector_for(self, platform: str) -> Optional[PlatformConnector]:
        row = self._integration(platform)
        if row is None or row.status != 'connected':
            return None
        return CONNECTORS[platform](row.credentials or {})

    def connect_platform(self, platform: str, credentials: Dict[str, Any]) -> bool:
        if platform not in CONNECTORS:
            logger.warning(f"Unsupported platform: {platform}")
            return False
        creds = {k: v for k, v in (credentials or {}).items() if k in CREDENTIAL_KEYS and v}
        row = self._integration(platform)
        if row is None:
            row = Integration(firm_id=self.firm_id, type='platform', provider=platform,
                              name=platform.replace('_', ' ').title())
            db.session.add(row)
        row.credentials = creds
        ok = CONNECTORS[platform](creds).test_connection()
        row.status = 'connected' if ok else 'error'
        row.error_status = None if ok else 'Connection test failed'
        row.last_sync_at = datetime.utcnow() if ok else row.last_sync_at
        db.session.commit()
        return ok

    def disconnect_platform(self, platform: str) -> bool:
        row = self._integration(platform)
        if row is None:
            return False
        row.status = 'disconnected'
        row.credentials = {}
        db.session.commit()
        return True

    def get_connected_platforms(self) -> List[str]:
        rows = Integration.query.filter_by(firm_id=self.firm_id, type='platform', status='connected').all()
        return sorted(r.provider for r in rows if r.provider in CONNECTORS)

    def get_platform_status(self) -> Dict[str, Dict[str, Any]]:
        status = {}
        for platform in CONNECTORS:
            row = self._integration(platform)
            status[platform] = {
                'connected': bool(row and row.status == 'connected'),
                'status': row.status if row else 'disconnected',
                'last_sync_at': row.last_sync_at.isoformat() if row and row.last_sync_at else None,
                'error_status': row.error_status if row else None,
            }
        return status

    def search_all_platforms(self, query: str, platforms: Optional[List[str]] = None, limit: int = 100,
                             date_range: Optional[Dict[str, datetime]] = None) -> Dict[str, Any]:
        targets = [p for p in self.get_connected_platforms() if not platforms or p in platforms]
        connectors = [c for c in (self.connector_for(p) for p in targets) if c is not None]
        messages, documents = [], []
        if connectors:
            with ThreadPoolExecutor(max_workers=len(connectors)) as pool:
                futures = [(c, pool.submit(c.search, query, limit, date_range)) for c in connectors]
                for connector, future in futures:
                    try:
                        found = future.result()
                    except Exception as e:
                        logger.error(f"Search on {connector.platform} failed: {e}")
                        found = []
                    (documents if connector.kind == 'documents' else messages).extend(found)
        messages.sort(key=lambda m: m.get('timestamp') or '', reverse=True)
        messages = messages[:limit]
        documents = documents[:limit]
        return {
            'messages': messages,
            'documents': documents,
            'total_results': len(messages) + len(documents),
            'platforms_searched': [c.platform for c in connectors],
        }
