"""
fal.ai workflow client.
Submits the cover-generator workflow and pulls image URLs out of its result.
"""

# stdlib imports
from dataclasses import dataclass
import logging
from typing import Any

# third-party imports
import fal_client


logger = logging.getLogger(__name__)

# Fields that usually carry the output image(s); visited before everything else
RESULT_URL_FIELDS = ("url", "image", "image_url", "result", "output", "response", "images")


@dataclass(frozen=True, slots=True)
class FalExecutionResult:
    request_id: str
    response: Any


async def run_fal_workflow(
    workflow_input: dict,
    workflow_path: str,
    api_key: str | None,
) -> FalExecutionResult:
    """
    Run a fal workflow through the queue API and wait for its result.

    Queue and log events are streamed to the debug log while waiting.

    Args:
        workflow_input (dict): Workflow arguments (image_url_1..3, aspect_ratio).
        workflow_path (str): Application id, e.g. "workflows/<owner>/<name>".
        api_key (str | None): FAL_API_KEY.

    Returns:
        FalExecutionResult: The fal request id and the raw JSON response.

    Raises:
        RuntimeError: If FAL_API_KEY is not configured.
    """
    if not api_key:
        raise RuntimeError("FAL_API_KEY is not configured.")

    client = fal_client.AsyncClient(key=api_key)

    logger.info(f"Submitting fal workflow {workflow_path} (aspect_ratio={workflow_input.get('aspect_ratio')})")
    handle = await client.submit(workflow_path, arguments=workflow_input)

    async for event in handle.iter_events(with_logs=True):
        logger.debug(f"[fal:{handle.request_id}] {event!r}")

    response = await handle.get()
    logger.info(f"Fal workflow finished: request_id={handle.request_id}")

    return FalExecutionResult(request_id=handle.request_id, response=response)


def _is_likely_url(value: str) -> bool:
    return value.startswith("http://") or value.startswith("https://")


def extract_result_urls(response: Any) -> list[str]:
    """
    Collect every http(s) URL in a workflow response, in first-seen order.

    Dicts are walked well-known fields first, then all values, so the main
    output image comes before URLs buried in metadata.
    """
    urls: dict[str, None] = {}

    def visit(value: Any) -> None:
        if not value:
            return

        if isinstance(value, str):
            if _is_likely_url(value):
                urls.setdefault(value, None)
            return

        if isinstance(value, (list, tuple)):
            for item in value:
                visit(item)
            return

        if isinstance(value, dict):
            for field_name in RESULT_URL_FIELDS:
                if field_name in value:
                    visit(value[field_name])
            for child in value.values():
                visit(child)

    visit(response)
    return list(urls)
