from __future__ import annotations

import base64
import binascii
from typing import cast

from portraitist.core.errors import VendorResponseError
from portraitist.services.vendors.base import (
    HttpVendor,
    PollResult,
    SubmitRequest,
    SubmitResult,
)


class OpenAIImagesVendor(HttpVendor):
    """Synchronous image edit through an OpenAI-compatible ``/images/edits`` endpoint."""

    name: str = "openai"

    async def submit(self, request: SubmitRequest) -> SubmitResult:
        prompt = request.prompt
        if request.negative_prompt:
            prompt = f"{prompt}\n\nAvoid: {request.negative_prompt}"

        with request.image_path.open("rb") as fh:
            files = {"image": (request.image_path.name, fh, request.mime_type)}
            async with self._client() as client:
                resp = await self._send(
                    client,
                    "POST",
                    f"{self.base_url}/images/edits",
                    operation="submit",
                    data={"model": self.model, "prompt": prompt, "n": "1"},
                    files=files,
                )

        body = self._json(resp, operation="submit")
        items = body.get("data")
        if not isinstance(items, list) or not items or not isinstance(items[0], dict):
            raise VendorResponseError(details="openai submit: missing data[0]")
        first = cast(dict[str, object], items[0])

        b64 = first.get("b64_json")
        if isinstance(b64, str) and b64 != "":
            try:
                return SubmitResult(image_bytes=base64.b64decode(b64, validate=True))
            except (binascii.Error, ValueError) as exc:
                raise VendorResponseError(details="openai submit: invalid b64_json") from exc
        url = first.get("url")
        if isinstance(url, str) and url != "":
            return SubmitResult(result_url=url)
        raise VendorResponseError(details="openai submit: neither b64_json nor url")

    async def poll(self, request_id: str) -> PollResult:
        # Results arrive with the submit response; an open row here means the
        # process died between the vendor call and the database write.
        return PollResult(status="failed", error="Result was not recorded; please resubmit")
