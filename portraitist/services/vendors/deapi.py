from __future__ import annotations

import logging
from typing import cast

from portraitist.core.errors import VendorResponseError
from portraitist.services.vendors.base import (
    HttpVendor,
    PollResult,
    SubmitRequest,
    SubmitResult,
)


logger = logging.getLogger(__name__)

_FAILED_STATUSES = {"failed", "error", "cancelled", "canceled", "rejected"}
_PENDING_STATUSES = {"pending", "queued", "waiting"}


def _data_block(body: dict[str, object], *, operation: str) -> dict[str, object]:
    data = body.get("data")
    if not isinstance(data, dict):
        raise VendorResponseError(details=f"deapi {operation}: missing data object")
    return cast(dict[str, object], data)


class DeApiVendor(HttpVendor):
    """Asynchronous img2img: submit returns a request id, results are polled."""

    name: str = "deapi"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model: str,
        timeout_s: float,
        steps: int = 20,
    ) -> None:
        super().__init__(base_url=base_url, api_key=api_key, model=model, timeout_s=timeout_s)
        self._steps: int = steps

    async def submit(self, request: SubmitRequest) -> SubmitResult:
        form: dict[str, str] = {
            "prompt": request.prompt,
            "model": self.model,
            "seed": str(request.seed),
            "steps": str(self._steps),
        }
        if request.negative_prompt:
            form["negative_prompt"] = request.negative_prompt

        with request.image_path.open("rb") as fh:
            files = {"image": (request.image_path.name, fh, request.mime_type)}
            async with self._client() as client:
                resp = await self._send(
                    client,
                    "POST",
                    f"{self.base_url}/img2img",
                    operation="submit",
                    data=form,
                    files=files,
                )

        data = _data_block(self._json(resp, operation="submit"), operation="submit")
        request_id = data.get("request_id")
        if not isinstance(request_id, (str, int)) or str(request_id).strip() == "":
            raise VendorResponseError(details="deapi submit: missing request_id")
        logger.info("deapi request submitted request_id=%s", request_id)
        return SubmitResult(request_id=str(request_id))

    async def poll(self, request_id: str) -> PollResult:
        async with self._client() as client:
            resp = await self._send(
                client,
                "GET",
                f"{self.base_url}/request-status/{request_id}",
                operation="poll",
            )
        data = _data_block(self._json(resp, operation="poll"), operation="poll")

        status = str(data.get("status") or "").strip().lower()
        result_url = data.get("result_url")
        progress_raw = data.get("progress")
        progress = float(progress_raw) if isinstance(progress_raw, (int, float)) else 0.0

        if isinstance(result_url, str) and result_url.strip() != "":
            return PollResult(status="completed", progress=100.0, result_url=result_url.strip())
        if status in _FAILED_STATUSES:
            error = data.get("error") or data.get("message") or "Generation failed"
            return PollResult(status="failed", progress=progress, error=str(error)[:2000])
        if status in ("done", "completed", "success"):
            raise VendorResponseError(details="deapi poll: completed without result_url")
        if status in _PENDING_STATUSES:
            return PollResult(status="pending", progress=progress)
        return PollResult(status="processing", progress=progress)
