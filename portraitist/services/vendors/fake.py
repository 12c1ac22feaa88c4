from __future__ import annotations

from io import BytesIO
import logging
import uuid

from PIL import Image, ImageOps

from portraitist.core.errors import VendorHTTPError
from portraitist.services.vendors.base import PollResult, SubmitRequest, SubmitResult


logger = logging.getLogger(__name__)


def _stylize(image_bytes: bytes) -> bytes:
    with Image.open(BytesIO(image_bytes)) as src:
        src.load()
        toned = ImageOps.colorize(ImageOps.grayscale(src), black="#2b1a0e", white="#f3d9a4")
    buf = BytesIO()
    toned.save(buf, format="PNG")
    return buf.getvalue()


class FakeVendor:
    """In-process stand-in for local development and tests.

    ``synchronous=True`` mimics vendors that answer with the image inline.
    Tests can script outcomes through ``submit_error`` and ``queued_polls``.
    """

    name: str = "fake"

    def __init__(self, *, model: str = "fake-portrait-v1", synchronous: bool = False) -> None:
        self.model: str = model
        self.synchronous: bool = synchronous
        self.submit_error: Exception | None = None
        self.queued_polls: list[PollResult] = []
        self.submitted: list[SubmitRequest] = []
        self.poll_calls: int = 0
        self._jobs: dict[str, bytes] = {}

    async def submit(self, request: SubmitRequest) -> SubmitResult:
        self.submitted.append(request)
        if self.submit_error is not None:
            raise self.submit_error
        source = request.image_path.read_bytes()
        if self.synchronous:
            return SubmitResult(image_bytes=_stylize(source))
        request_id = f"fake-{uuid.uuid4().hex}"
        self._jobs[request_id] = source
        logger.info("fake vendor accepted request_id=%s", request_id)
        return SubmitResult(request_id=request_id)

    async def poll(self, request_id: str) -> PollResult:
        self.poll_calls += 1
        if self.queued_polls:
            return self.queued_polls.pop(0)
        source = self._jobs.get(request_id)
        if source is None:
            raise VendorHTTPError(upstream_status=404, details=f"fake poll: unknown {request_id}")
        return PollResult(status="completed", progress=100.0, image_bytes=_stylize(source))

    async def download(self, url: str) -> bytes:
        raise VendorHTTPError(upstream_status=404, details="fake vendor serves no URLs")
