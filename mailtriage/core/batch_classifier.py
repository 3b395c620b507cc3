"""
Batch classifier.

Partitions work items into fixed-size batches, sends one combined prompt per
batch and merges the answers. The result list always has exactly one entry per
input item, in input order: ids the model forgot become error results, and a
failed batch only fails its own items.
"""

import copy
import logging
import time
from typing import Callable, Dict, List, Optional, Sequence

from .classification_client import ClassificationClient
from .models import ClassificationResult, RunContext, WorkItem
from .prompt_engine import PromptEngine
from ..utils.errors import AppError, InvalidResponse
from ..utils.json_validator import load_schema
from ..utils.sanitize import sanitize_label_name

logger = logging.getLogger(__name__)

# Keeps a combined prompt well under the model's practical input size.
DEFAULT_BATCH_SIZE = 10
DEFAULT_BATCH_DELAY = 0.5


class BatchClassifier:
    """
    Drives the classification client batch by batch.

    Args:
        client: Classification client
        prompt_engine: Renders the combined batch prompt
        batch_size: Items per model call
        batch_delay: Seconds to wait between consecutive calls
        allowed_labels: Optional closed label set, enforced through the schema
        sleep: Wait function (injected by tests)
    """

    def __init__(
        self,
        client: ClassificationClient,
        prompt_engine: Optional[PromptEngine] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_delay: float = DEFAULT_BATCH_DELAY,
        allowed_labels: Optional[List[str]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.client = client
        self.prompt_engine = prompt_engine or PromptEngine()
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.allowed_labels = list(allowed_labels) if allowed_labels else None
        self._sleep = sleep
        self._schema = self._build_schema()

    def _build_schema(self) -> Dict:
        schema = copy.deepcopy(load_schema("batch_classification"))
        schema["maxItems"] = max(schema.get("maxItems", self.batch_size), self.batch_size)
        if self.allowed_labels:
            schema["items"]["properties"]["label"]["enum"] = self.allowed_labels
        return schema

    def create_batches(self, items: Sequence[WorkItem]) -> List[List[WorkItem]]:
        return [list(items[i:i + self.batch_size]) for i in range(0, len(items), self.batch_size)]

    def classify_batch(
        self,
        items: Sequence[WorkItem],
        instructions: str,
        context: Optional[RunContext] = None,
    ) -> List[ClassificationResult]:
        """
        Classify one batch with a single model call.

        Never raises for model or transport failures: every item gets a
        result, carrying the error when its label could not be determined.
        """
        log = context.logger if context else logger
        if not items:
            return []

        prompt = self.prompt_engine.build_batch_prompt(instructions, items, self.allowed_labels)
        result = self.client.call(prompt, schema=self._schema, context=context)
        if not result.ok:
            log.error(f"Batch of {len(items)} failed: {result.error.message}")
            return [ClassificationResult(id=item.id, error=result.error) for item in items]

        by_id: Dict[str, ClassificationResult] = {}
        submitted = {item.id for item in items}
        for entry in result.data:
            item_id = str(entry.get("id", ""))
            if item_id not in submitted:
                log.warning(f"Ignoring classification for unknown id {item_id!r}")
                continue
            if item_id in by_id:
                log.warning(f"Duplicate classification for {item_id}; keeping the first")
                continue
            label = sanitize_label_name(entry.get("label", ""))
            if not label:
                by_id[item_id] = ClassificationResult(
                    id=item_id, error=InvalidResponse("Model returned an empty label")
                )
                continue
            by_id[item_id] = ClassificationResult(
                id=item_id, label=label, confidence=entry.get("confidence")
            )

        results = []
        for item in items:
            found = by_id.get(item.id)
            if found is None:
                log.warning(f"No classification returned for {item.id}")
                found = ClassificationResult(
                    id=item.id,
                    error=InvalidResponse("Item missing from batch response", {"id": item.id}),
                )
            results.append(found)
        return results

    def classify_all(
        self,
        items: Sequence[WorkItem],
        instructions: str,
        context: Optional[RunContext] = None,
    ) -> List[ClassificationResult]:
        """
        Classify every item. Returns exactly ``len(items)`` results in input order.
        """
        log = context.logger if context else logger
        results: List[ClassificationResult] = []
        batches = self.create_batches(items)

        for index, batch in enumerate(batches):
            if index > 0 and self.batch_delay > 0:
                self._sleep(self.batch_delay)
            try:
                results.extend(self.classify_batch(batch, instructions, context))
            except AppError as e:
                log.error(f"Batch {index + 1}/{len(batches)} failed: {e.message}")
                results.extend(ClassificationResult(id=item.id, error=e) for item in batch)

        ok = sum(1 for r in results if r.ok)
        log.info(f"Classified {ok}/{len(results)} items in {len(batches)} batch(es)")
        return results
