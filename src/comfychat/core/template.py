"""Workflow templating: prompt injection and seed strategy.

A workflow is a ComfyUI "API format" graph: a mapping from node id to a
node with a ``class_type`` and an ``inputs`` mapping.  The user pastes it
once, with their prompt text replaced by :data:`PROMPT_PLACEHOLDER`.  Each
request then goes through two independent passes:

1. **Prompt injection** — the graph is serialized to JSON text, the first
   placeholder is replaced by the prompt escaped as JSON string content,
   and the text is parsed back.  Working on the text keeps the graph
   opaque; the escaping keeps it well-formed.
2. **Seed injection** — a structural walk that overwrites every ``seed``
   and ``noise_seed`` input with the seed chosen by the strategy.

Nothing here performs I/O.  Randomness comes from an injectable
:class:`random.Random` so results are reproducible in tests.

Usage Example
-------------
    from comfychat.core.template import parse_workflow, prepare_workflow
    from comfychat.core.models import SeedStrategy

    graph = parse_workflow(settings.workflow_json)
    prepared = prepare_workflow(graph, "a cat", SeedStrategy.INCREMENT, 41)
    prepared.applied_seed  # 42
"""

from __future__ import annotations

import json
import logging
import random
from typing import Any, NamedTuple

from .exceptions import TemplateError
from .models import SeedStrategy

logger = logging.getLogger(__name__)

PROMPT_PLACEHOLDER = "%PROMPT%"

# Input names that receive the applied seed, wherever they appear.
SEED_KEYS = frozenset({"seed", "noise_seed"})

# Largest integer that survives a round trip through an IEEE-754 double.
MAX_SAFE_SEED = 2**53 - 1
RANDOM_SEED_CEILING = 10**15

DEFAULT_WORKFLOW_JSON = """{
  "3": {
    "inputs": {
      "seed": 156680208700286,
      "steps": 20,
      "cfg": 8,
      "sampler_name": "euler",
      "scheduler": "normal",
      "denoise": 1,
      "model": ["4", 0],
      "positive": ["6", 0],
      "negative": ["7", 0],
      "latent_image": ["5", 0]
    },
    "class_type": "KSampler"
  },
  "4": {
    "inputs": {
      "ckpt_name": "v1-5-pruned-emaonly.ckpt"
    },
    "class_type": "CheckpointLoaderSimple"
  },
  "5": {
    "inputs": {
      "width": 512,
      "height": 512,
      "batch_size": 1
    },
    "class_type": "EmptyLatentImage"
  },
  "6": {
    "inputs": {
      "text": "%PROMPT%",
      "clip": ["4", 1]
    },
    "class_type": "CLIPTextEncode"
  },
  "7": {
    "inputs": {
      "text": "text, watermark",
      "clip": ["4", 1]
    },
    "class_type": "CLIPTextEncode"
  },
  "8": {
    "inputs": {
      "samples": ["3", 0],
      "vae": ["4", 2]
    },
    "class_type": "VAEDecode"
  },
  "9": {
    "inputs": {
      "filename_prefix": "ComfyUI",
      "images": ["8", 0]
    },
    "class_type": "SaveImage"
  }
}"""


class PreparedWorkflow(NamedTuple):
    """Result of :func:`prepare_workflow`."""

    workflow: dict[str, Any]
    applied_seed: int


def parse_workflow(text: str) -> dict[str, Any]:
    """Parse workflow JSON text into a graph.

    Args:
        text: Raw workflow JSON as stored in settings.

    Returns:
        The parsed graph.

    Raises:
        TemplateError: If the text is not valid JSON or not a JSON object.
    """
    try:
        graph = json.loads(text)
    except (TypeError, ValueError) as e:
        raise TemplateError(f"Workflow is not valid JSON: {e}") from e
    if not isinstance(graph, dict):
        raise TemplateError("Workflow must be a JSON object mapping node ids to nodes")
    return graph


def _escape_prompt(prompt: str) -> str:
    """Escape prompt text for embedding inside a JSON string literal."""
    try:
        prompt.encode("utf-8")
    except UnicodeEncodeError as e:
        raise TemplateError("Prompt contains characters that cannot be encoded") from e
    # json.dumps escapes quotes, backslashes, newlines and other control
    # characters; strip the surrounding quotes to get string content.
    return json.dumps(prompt, ensure_ascii=False)[1:-1]


def inject_prompt(graph: dict[str, Any], prompt: str) -> dict[str, Any]:
    """Replace the first prompt placeholder with ``prompt``.

    The input graph is left untouched; a freshly parsed copy is returned.

    Raises:
        TemplateError: If the placeholder is missing, the prompt cannot be
            escaped, or the substituted text no longer parses.
    """
    text = json.dumps(graph, ensure_ascii=False)
    if PROMPT_PLACEHOLDER not in text:
        raise TemplateError(f"Workflow does not contain the {PROMPT_PLACEHOLDER} placeholder")

    injected = text.replace(PROMPT_PLACEHOLDER, _escape_prompt(prompt), 1)
    try:
        return json.loads(injected)
    except ValueError as e:
        raise TemplateError(f"Workflow is malformed after prompt substitution: {e}") from e


def next_seed(
    strategy: SeedStrategy,
    last_seed: int | None,
    rng: random.Random | None = None,
) -> int:
    """Compute the seed for the next request.

    Args:
        strategy: Random draws from ``[0, 10**15)``; Increment adds one to
            ``last_seed`` and wraps to 0 past ``2**53 - 1``.
        last_seed: Previously applied seed (``None`` is treated as 0).
        rng: Random source, defaults to the module-level generator.

    Returns:
        The seed to apply.
    """
    if SeedStrategy(strategy) is SeedStrategy.RANDOM:
        source = rng if rng is not None else random
        return source.randrange(RANDOM_SEED_CEILING)

    seed = (last_seed or 0) + 1
    if seed > MAX_SAFE_SEED:
        seed = 0
    return seed


def apply_seed(graph: dict[str, Any], seed: int) -> dict[str, Any]:
    """Write ``seed`` into every ``seed``/``noise_seed`` input, in place.

    Nodes that are not objects, have no ``inputs`` or have non-object
    inputs are skipped.

    Returns:
        The same graph, for chaining.
    """
    for node in graph.values():
        if not isinstance(node, dict):
            continue
        inputs = node.get("inputs")
        if not isinstance(inputs, dict):
            continue
        for key in inputs:
            if key in SEED_KEYS:
                inputs[key] = seed
    return graph


def prepare_workflow(
    graph: dict[str, Any],
    prompt: str,
    strategy: SeedStrategy,
    last_seed: int | None,
    rng: random.Random | None = None,
) -> PreparedWorkflow:
    """Produce the graph to submit for one request.

    Args:
        graph: Parsed workflow template containing the placeholder once.
        prompt: User prompt text.
        strategy: Seed strategy from settings.
        last_seed: Last applied seed from settings.
        rng: Optional random source for :data:`SeedStrategy.RANDOM`.

    Returns:
        :class:`PreparedWorkflow` with the mutated graph and applied seed.

    Raises:
        TemplateError: See :func:`inject_prompt`.
    """
    workflow = inject_prompt(graph, prompt)
    applied_seed = next_seed(strategy, last_seed, rng)
    apply_seed(workflow, applied_seed)
    logger.debug("Prepared workflow with %d nodes, seed=%d", len(workflow), applied_seed)
    return PreparedWorkflow(workflow, applied_seed)
