#!/usr/bin/env python3
"""
Push channel: Firebase Cloud Messaging (HTTP v1) for Android/web, APNs for iOS.

The device token comes from ``data["deviceToken"]`` (or ``token``) and the
platform from ``data["platform"]`` (android, ios, web; default android).
iOS goes to APNs directly when APNs credentials are configured, otherwise
through FCM's apns block.
"""

import json
import logging
import time
from typing import Any, Dict, Optional

import httpx
import jwt

from core.config_loader import PushChannelConfig
from notification.channels.base import (
    NotificationChannel,
    failure_from_exception,
    raise_for_provider_status,
)
from notification.exceptions import ProviderError
from notification.models import DeliveryResult, NotificationMessage

logger = logging.getLogger(__name__)

FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"

APNS_PRODUCTION_HOST = "https://api.push.apple.com"
APNS_SANDBOX_HOST = "https://api.sandbox.push.apple.com"
APNS_TOKEN_TTL_SECONDS = 50 * 60  # Apple rejects provider tokens older than one hour

MIN_TOKEN_LENGTH = 20

# Keys consumed for routing/shaping, never forwarded as data
_RESERVED_KEYS = {'deviceToken', 'token', 'platform', 'badge', 'sound', 'icon', 'color', 'link', 'clickAction'}


def _badge(message: NotificationMessage) -> Optional[int]:
    value = message.data.get('badge')
    return None if value is None else int(value)


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


class PushChannel(NotificationChannel):
    """Push notification channel."""

    def __init__(
        self,
        config: Optional[PushChannelConfig] = None,
        sandbox: bool = False,
        http_client: Optional[httpx.AsyncClient] = None,
        apns_client: Optional[httpx.AsyncClient] = None
    ):
        super().__init__(sandbox=sandbox, http_client=http_client)
        self.config = config or PushChannelConfig()
        self._apns_http = apns_client
        self._owns_apns_http = apns_client is None
        self._fcm_token: Optional[str] = None
        self._fcm_token_expires_at = 0.0
        self._apns_token: Optional[str] = None
        self._apns_token_issued_at = 0.0

    @property
    def channel_type(self) -> str:
        return 'push'

    def validate_config(self) -> bool:
        return self.config.firebase is not None or self.config.apns is not None

    async def verify(self, address: str) -> bool:
        return bool(address) and len(address) >= MIN_TOKEN_LENGTH

    async def send(self, message: NotificationMessage) -> DeliveryResult:
        token = message.data.get('deviceToken') or message.data.get('token')
        if not token:
            return DeliveryResult.failure("Device token missing", retryable=False)
        platform = str(message.data.get('platform') or 'android').lower()
        try:
            _badge(message)
        except (TypeError, ValueError):
            return DeliveryResult.failure(f"Invalid badge value: {message.data['badge']!r}", retryable=False)

        use_apns = platform == 'ios' and self.config.apns is not None
        provider = 'apns' if use_apns else 'fcm'

        if self.sandbox:
            return self._sandbox_result(provider=provider, platform=platform)

        if not use_apns and self.config.firebase is None:
            logger.error("Push notification requested but Firebase is not configured")
            return DeliveryResult.failure("Push provider not configured (auth)", retryable=False)

        try:
            if use_apns:
                message_id = await self._send_apns(token, message)
            else:
                message_id = await self._send_fcm(self.build_fcm_message(token, platform, message))
        except (ProviderError, httpx.HTTPError, jwt.PyJWTError) as e:
            logger.error(f"Failed to send push via {provider}: {e}")
            return failure_from_exception(e, 'push')

        logger.info(f"Push sent via {provider} to {platform} device")
        return DeliveryResult(
            success=True,
            message_id=message_id,
            details={'provider': provider, 'platform': platform},
        )

    # ============ Payload shaping ============

    def _custom_data(self, message: NotificationMessage) -> Dict[str, str]:
        data = {k: _stringify(v) for k, v in message.data.items() if k not in _RESERVED_KEYS}
        data['eventId'] = message.event_id
        data['type'] = message.type.value
        return data

    def build_fcm_message(self, token: str, platform: str, message: NotificationMessage) -> Dict[str, Any]:
        title = message.title or message.subject or ""
        sound = message.data.get('sound') or self.config.default_sound
        fcm: Dict[str, Any] = {
            'token': token,
            'notification': {'title': title, 'body': message.body},
            'data': self._custom_data(message),
        }

        if platform == 'ios':
            aps: Dict[str, Any] = {
                'alert': {'title': title, 'body': message.body},
                'sound': sound,
                'content-available': 1,
            }
            badge = _badge(message)
            if badge is not None:
                aps['badge'] = badge
            fcm['apns'] = {'headers': {'apns-priority': '10'}, 'payload': {'aps': aps}}
        elif platform == 'web':
            webpush: Dict[str, Any] = {
                'notification': {
                    'icon': message.data.get('icon') or self.config.default_icon,
                    'badge': _stringify(message.data.get('badge', '')),
                },
            }
            if message.data.get('link'):
                webpush['fcm_options'] = {'link': message.data['link']}
            fcm['webpush'] = webpush
        else:
            notification = {
                'sound': sound,
                'icon': message.data.get('icon') or self.config.default_icon,
                'color': message.data.get('color') or self.config.default_color,
            }
            if message.data.get('clickAction'):
                notification['click_action'] = message.data['clickAction']
            fcm['android'] = {'priority': 'high', 'notification': notification}

        return {'message': fcm}

    def build_apns_payload(self, message: NotificationMessage) -> Dict[str, Any]:
        aps: Dict[str, Any] = {
            'alert': {'title': message.title or message.subject or "", 'body': message.body},
            'sound': message.data.get('sound') or self.config.default_sound,
            'content-available': 1,
        }
        badge = _badge(message)
        if badge is not None:
            aps['badge'] = badge
        return {'aps': aps, **self._custom_data(message)}

    # ============ FCM ============

    async def _get_fcm_access_token(self) -> str:
        now = time.time()
        if self._fcm_token and now < self._fcm_token_expires_at - 60:
            return self._fcm_token

        firebase = self.config.firebase
        assertion = jwt.encode(
            {
                'iss': firebase.client_email,
                'scope': FCM_SCOPE,
                'aud': firebase.token_uri,
                'iat': int(now),
                'exp': int(now) + 3600,
            },
            firebase.private_key,
            algorithm='RS256',
        )
        response = await self._client(self.config.timeout_seconds).post(
            firebase.token_uri,
            data={'grant_type': JWT_BEARER_GRANT, 'assertion': assertion},
        )
        raise_for_provider_status(response, 'FCM OAuth')
        body = response.json()
        self._fcm_token = body['access_token']
        self._fcm_token_expires_at = now + int(body.get('expires_in', 3600))
        return self._fcm_token

    async def _send_fcm(self, payload: Dict[str, Any]) -> Optional[str]:
        access_token = await self._get_fcm_access_token()
        response = await self._client(self.config.timeout_seconds).post(
            FCM_SEND_URL.format(project_id=self.config.firebase.project_id),
            json=payload,
            headers={'Authorization': f"Bearer {access_token}"},
        )
        raise_for_provider_status(response, 'FCM')
        return response.json().get('name')

    # ============ APNs ============

    def _get_apns_token(self) -> str:
        now = time.time()
        if self._apns_token and now - self._apns_token_issued_at < APNS_TOKEN_TTL_SECONDS:
            return self._apns_token

        apns = self.config.apns
        self._apns_token = jwt.encode(
            {'iss': apns.team_id, 'iat': int(now)},
            apns.private_key,
            algorithm='ES256',
            headers={'kid': apns.key_id},
        )
        self._apns_token_issued_at = now
        return self._apns_token

    def _apns_client(self) -> httpx.AsyncClient:
        if self._apns_http is None:
            # APNs only speaks HTTP/2
            self._apns_http = httpx.AsyncClient(http2=True, timeout=self.config.timeout_seconds)
        return self._apns_http

    async def _send_apns(self, token: str, message: NotificationMessage) -> Optional[str]:
        apns = self.config.apns
        host = APNS_PRODUCTION_HOST if apns.production else APNS_SANDBOX_HOST
        response = await self._apns_client().post(
            f"{host}/3/device/{token}",
            json=self.build_apns_payload(message),
            headers={
                'authorization': f"bearer {self._get_apns_token()}",
                'apns-topic': apns.bundle_id,
                'apns-push-type': 'alert',
                'apns-priority': '10',
            },
        )
        raise_for_provider_status(response, 'APNs')
        return response.headers.get('apns-id')

    async def aclose(self) -> None:
        await super().aclose()
        if self._apns_http is not None and self._owns_apns_http:
            await self._apns_http.aclose()
            self._apns_http = None
