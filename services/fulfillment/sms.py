"""
Fulfillment Service — SMS ゲートウェイ

3 つの SMS 事業者（Orange / MTN / Moov）をそれぞれ 1 クラスで実装し、
起動時に設定で 1 つだけ選ぶ。

    Orange  OAuth2 client credentials でトークン取得 → Bearer
    MTN     API キーを Bearer で送る
    Moov    API キーを X-API-Key ヘッダで送る

SMS はベストエフォート。SmsGateway.send は失敗をログに残して False を返し、
例外は呼び出し元（取引の状態遷移）に伝播させない。
"""

import logging
import re
from abc import ABC, abstractmethod

import httpx

from .config import FulfillmentConfig
from .errors import DeliveryFailure

logger = logging.getLogger(__name__)

DEFAULT_BASE_URLS = {
    "orange": "https://api.orange.com/smsmessaging/v1",
    "mtn": "https://api.mtn.com/v1",
    "moov": "https://api.moov.ci/v1",
}


class SmsProvider(ABC):
    name: str = ""

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        sender_id: str,
        base_url: str | None = None,
    ) -> None:
        self.client = client
        self.api_key = api_key
        self.sender_id = sender_id
        self.base_url = (base_url or DEFAULT_BASE_URLS[self.name]).rstrip("/")

    @abstractmethod
    async def send(self, phone: str, text: str) -> None:
        """送信に失敗したら DeliveryFailure"""

    async def _post(self, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.post(f"{self.base_url}{path}", **kwargs)
        except httpx.HTTPError as e:
            raise DeliveryFailure(f"{self.name}: {type(e).__name__}: {e}") from e
        if not response.is_success:
            raise DeliveryFailure(
                f"{self.name}: SMS request failed with status {response.status_code}",
                response_code=response.status_code,
                response_body=response.text,
            )
        return response


class OrangeSmsProvider(SmsProvider):
    name = "orange"

    def __init__(self, client, api_key, sender_id, base_url=None, api_secret: str = ""):
        super().__init__(client, api_key, sender_id, base_url)
        self.api_secret = api_secret

    async def _access_token(self) -> str:
        response = await self._post(
            "/oauth/token",
            data={"grant_type": "client_credentials"},
            auth=(self.api_key, self.api_secret),
        )
        try:
            token = response.json().get("access_token")
        except ValueError as e:
            raise DeliveryFailure("orange: token response is not JSON") from e
        if not token:
            raise DeliveryFailure("orange: token response has no access_token")
        return token

    async def send(self, phone: str, text: str) -> None:
        token = await self._access_token()
        await self._post(
            "/messages",
            headers={"Authorization": f"Bearer {token}"},
            json={
                "outboundSMSMessageRequest": {
                    "address": f"tel:+{phone}",
                    "senderAddress": f"tel:+{self.sender_id}",
                    "outboundSMSTextMessage": {"message": text},
                }
            },
        )


class MtnSmsProvider(SmsProvider):
    name = "mtn"

    async def send(self, phone: str, text: str) -> None:
        await self._post(
            "/sms/send",
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={"from": self.sender_id, "to": phone, "message": text},
        )


class MoovSmsProvider(SmsProvider):
    name = "moov"

    async def send(self, phone: str, text: str) -> None:
        await self._post(
            "/messages",
            headers={"X-API-Key": self.api_key},
            json={"sender": self.sender_id, "recipient": phone, "content": text},
        )


def format_phone_number(phone: str, country_code: str = "225") -> str:
    """数字以外を除去し、8 桁のローカル番号には国番号を付ける"""
    digits = re.sub(r"[^0-9]", "", phone)
    if len(digits) == 8:
        digits = country_code + digits
    return digits


class SmsGateway:
    def __init__(self, provider: SmsProvider, country_code: str = "225") -> None:
        self.provider = provider
        self.country_code = country_code

    async def send(self, phone: str, text: str) -> bool:
        number = format_phone_number(phone, self.country_code)
        try:
            await self.provider.send(number, text)
        except DeliveryFailure as e:
            logger.warning(
                "SMS delivery failed via %s to %s: %s", self.provider.name, number, e
            )
            return False
        logger.info("SMS sent via %s to %s", self.provider.name, number)
        return True

    async def send_bulk(self, phones: list[str], text: str) -> dict[str, bool]:
        return {phone: await self.send(phone, text) for phone in phones}


def create_sms_gateway(
    config: FulfillmentConfig, client: httpx.AsyncClient
) -> SmsGateway | None:
    """設定の sms_provider から実装を選ぶ。未設定なら SMS は無効。"""
    if not config.sms_provider:
        return None
    common = {
        "client": client,
        "api_key": config.sms_api_key,
        "sender_id": config.sms_sender_id,
        "base_url": config.sms_base_url,
    }
    provider: SmsProvider
    if config.sms_provider == "orange":
        provider = OrangeSmsProvider(**common, api_secret=config.sms_api_secret)
    elif config.sms_provider == "mtn":
        provider = MtnSmsProvider(**common)
    elif config.sms_provider == "moov":
        provider = MoovSmsProvider(**common)
    else:
        raise ValueError(f"Unsupported SMS provider: {config.sms_provider}")
    return SmsGateway(provider, config.sms_country_code)
