"""Selector resolver: describe a captured element and re-locate it during playback.

Description happens in two halves. A small in-page script (``ELEMENT_FACTS_JS``)
collects raw facts about the element the user touched; ``describe()`` turns
those facts into a ``TargetDescriptor`` in Python, picking the most stable
strategy available:

1. form controls: unique ``name``, then placeholder, aria-label, associated or nearby label
2. clickables: visible text plus the most meaningful class name
3. a short structural path of stable ids/classes
4. coordinates only

Resolution during playback is coordinate-first (exact point, element center,
scroll-compensated point) and falls back to the descriptor. A found element is
tagged with a one-shot token attribute so the action script can pick it up.
Resolution never raises: it returns ``Resolved`` or ``NotFound``.
"""

import json
import logging
import re
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..exceptions import PageError
from .models import (
    CapturedCoordinates,
    ClickStep,
    CoordinateDescriptor,
    InputStep,
    PathSegment,
    Point,
    SemanticDescriptor,
    StructuralDescriptor,
    TargetDescriptor,
    TextDescriptor,
    ViewportSnapshot,
)

if TYPE_CHECKING:
    from .models import InteractionStep
    from .page import Page

logger = logging.getLogger(__name__)

TARGET_ATTRIBUTE = "data-bank-recipes-target"

MAX_TEXT_LENGTH = 100
MAX_CLASS_LENGTH = 50
MAX_PATH_DEPTH = 3

FORM_CONTROL_TAGS = frozenset({"input", "textarea", "select"})

# Element ids of the recorder/player chrome; interaction with them is never a step.
RESERVED_ELEMENT_IDS = (
    "recording-controls",
    "playback-controls",
    "save-modal",
    "stop-btn",
    "start-btn",
    "pause-btn",
    "skip-btn",
    "continue-btn",
    "go-btn",
    "reload-btn",
    "back-btn",
    "forward-btn",
    "url-input",
    "confirm-save-btn",
    "cancel-save-btn",
    "recording-name-input",
    "recording-institution-input",
    "step-error-dialog",
)
RESERVED_CLASSES = ("control-btn", "nav-btn")

_DYNAMIC_ID_RES = (
    re.compile(r"^[0-9a-f]{20,}"),  # long hex
    re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}"),  # uuid-like
    re.compile(r"^[0-9]{10,}"),  # timestamp-like
)

_CLICKABLE_CLASS_HINTS = ("button", "link", "btn", "product", "name")
_DESCENDANT_CLASS_HINTS = ("name", "label", "text", "product")


def is_dynamic_id(value: str | None) -> bool:
    """Return True for ids that look generated per page load."""
    if not value:
        return False
    return any(pattern.search(value) for pattern in _DYNAMIC_ID_RES)


def _is_noise_class(name: str) -> bool:
    lowered = name.lower()
    return lowered.startswith("rds-") or "layout" in lowered or "wrapper" in lowered


def _meaningful_class(classes: Iterable[str], hints: tuple[str, ...], *, fallback_first: bool) -> str | None:
    candidates = [c for c in classes if c and not _is_noise_class(c)]
    for candidate in candidates:
        lowered = candidate.lower()
        if any(hint in lowered for hint in hints):
            return candidate
    if fallback_first and candidates:
        return candidates[0]
    return None


def _clean_text(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return " ".join(value.split())


# --- Description ---


def describe(facts: Mapping[str, Any]) -> TargetDescriptor:
    """Build the most stable target descriptor the element facts allow.

    Args:
        facts: Element facts as produced by ``ELEMENT_FACTS_JS``

    Returns:
        A semantic, text, structural or coordinate-only descriptor
    """
    tag = str(facts.get("tag") or "").lower()

    if tag in FORM_CONTROL_TAGS:
        semantic = _describe_form_control(facts, tag)
        if semantic is not None:
            return semantic

    clickable = facts.get("clickable")
    if isinstance(clickable, Mapping) and _clean_text(clickable.get("text")):
        return _describe_clickable(clickable)

    structural = _describe_structure(facts)
    if structural is not None:
        return structural

    return CoordinateDescriptor()


def _describe_form_control(facts: Mapping[str, Any], tag: str) -> SemanticDescriptor | None:
    name = facts.get("name")
    if name and facts.get("nameUnique"):
        return SemanticDescriptor(attribute="name", value=name, tag=tag)

    for key, attribute in (("placeholder", "placeholder"), ("ariaLabel", "aria-label")):
        value = _clean_text(facts.get(key))
        if value:
            return SemanticDescriptor(attribute=attribute, value=value, tag=tag)

    label = _clean_text(facts.get("labelFor")) or _clean_text(facts.get("nearbyLabel"))
    if label:
        return SemanticDescriptor(attribute="label", value=label[:MAX_TEXT_LENGTH], tag=tag)
    return None


def _describe_clickable(clickable: Mapping[str, Any]) -> TextDescriptor:
    text = _clean_text(clickable.get("text"))[:MAX_TEXT_LENGTH]
    class_name = _meaningful_class(clickable.get("classes") or [], _CLICKABLE_CLASS_HINTS, fallback_first=True)
    if class_name is None or len(class_name) > MAX_CLASS_LENGTH:
        descendant = _meaningful_class(clickable.get("descendantClasses") or [], _DESCENDANT_CLASS_HINTS, fallback_first=False)
        if descendant and len(descendant) < MAX_CLASS_LENGTH:
            class_name = descendant
        elif class_name and len(class_name) > MAX_CLASS_LENGTH:
            class_name = None
    return TextDescriptor(text=text, class_name=class_name, tag=str(clickable.get("tag") or "button"))


def _describe_structure(facts: Mapping[str, Any]) -> StructuralDescriptor | None:
    tag = str(facts.get("tag") or "").lower()
    unique_class = facts.get("uniqueClass")
    if tag and unique_class and not _is_noise_class(unique_class):
        return StructuralDescriptor(path=[PathSegment(tag=tag, class_name=unique_class)])

    segments: list[PathSegment] = []
    for ancestor in (facts.get("ancestors") or [])[:MAX_PATH_DEPTH]:
        ancestor_tag = str(ancestor.get("tag") or "").lower()
        if not ancestor_tag:
            break
        ancestor_id = ancestor.get("id")
        if ancestor_id and not is_dynamic_id(ancestor_id):
            segments.append(PathSegment(tag=ancestor_tag, id=ancestor_id))
            break
        classes = [c for c in ancestor.get("classes") or [] if not _is_noise_class(c)]
        segments.append(PathSegment(tag=ancestor_tag, class_name=classes[0] if classes else None))

    if not any(segment.id or segment.class_name for segment in segments):
        return None
    segments.reverse()
    return StructuralDescriptor(path=segments)


def capture_coordinates(facts: Mapping[str, Any]) -> CapturedCoordinates | None:
    """Extract the interaction point, element center and viewport snapshot."""
    try:
        point = facts["point"]
        center = facts["center"]
        viewport = facts["viewport"]
        return CapturedCoordinates(
            point=Point(x=float(point["x"]), y=float(point["y"])),
            element_center=Point(x=float(center["x"]), y=float(center["y"])),
            viewport=ViewportSnapshot(
                width=float(viewport["width"]),
                height=float(viewport["height"]),
                scroll_x=float(viewport.get("scrollX", 0.0)),
                scroll_y=float(viewport.get("scrollY", 0.0)),
            ),
        )
    except (KeyError, TypeError, ValueError):
        return None


# --- In-page scripts ---

# function (el, point, labelRadius, reserved) -> facts
ELEMENT_FACTS_JS = r"""
function (el, point, labelRadius, reserved) {
  const DYNAMIC = [/^[0-9a-f]{20,}/, /[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}/, /^[0-9]{10,}/];
  const isDynamic = (id) => !!id && DYNAMIC.some((re) => re.test(id));
  const classesOf = (node) => (typeof node.className === 'string' ? node.className.trim().split(/\s+/).filter(Boolean) : []);
  const textOf = (node) => (node.innerText || node.textContent || '').replace(/\s+/g, ' ').trim();
  const rect = el.getBoundingClientRect();
  const center = {x: rect.left + rect.width / 2, y: rect.top + rect.height / 2};
  const tag = el.tagName.toLowerCase();

  let nameUnique = false;
  const name = el.getAttribute('name');
  if (name) {
    try { nameUnique = document.querySelectorAll(tag + '[name="' + CSS.escape(name) + '"]').length === 1; } catch (e) {}
  }

  let labelFor = null;
  if (el.id && !isDynamic(el.id)) {
    try {
      const lbl = document.querySelector('label[for="' + CSS.escape(el.id) + '"]');
      if (lbl) labelFor = textOf(lbl) || null;
    } catch (e) {}
  }
  if (!labelFor && el.closest) {
    const wrapping = el.closest('label');
    if (wrapping) labelFor = textOf(wrapping) || null;
  }

  let nearbyLabel = null;
  if (!labelFor && /^(input|textarea|select)$/.test(tag)) {
    let bestDist = Infinity;
    for (const lbl of document.querySelectorAll('label')) {
      const r = lbl.getBoundingClientRect();
      const dist = Math.abs(r.left - rect.left) + Math.abs(r.top - rect.top);
      if (dist < labelRadius && dist < bestDist) {
        bestDist = dist;
        nearbyLabel = textOf(lbl) || null;
      }
    }
  }

  let clickable = null;
  let node = el;
  for (let i = 0; i < 5 && node && node.nodeType === 1; i++) {
    const role = node.getAttribute('role');
    if (node.tagName === 'BUTTON' || node.tagName === 'A' || node.type === 'submit' || role === 'button' || role === 'link') {
      const text = textOf(node);
      const descendantClasses = [];
      if (text) {
        for (const child of node.querySelectorAll('*')) {
          if (textOf(child) === text) descendantClasses.push(...classesOf(child));
        }
      }
      clickable = {tag: node.tagName.toLowerCase(), id: node.id || null, classes: classesOf(node), text: text, descendantClasses: descendantClasses};
      break;
    }
    node = node.parentElement;
  }

  const ancestors = [];
  node = el;
  for (let i = 0; i < 3 && node && node.nodeType === 1; i++) {
    ancestors.push({tag: node.tagName.toLowerCase(), id: node.id || null, classes: classesOf(node)});
    node = node.parentElement;
  }

  let uniqueClass = null;
  for (const cls of classesOf(el)) {
    try {
      if (document.querySelectorAll('.' + CSS.escape(cls)).length === 1) { uniqueClass = cls; break; }
    } catch (e) {}
  }

  let overlay = false;
  for (node = el; node && node.nodeType === 1; node = node.parentElement) {
    if ((node.id && reserved.ids.includes(node.id)) || classesOf(node).some((c) => reserved.classes.includes(c))) {
      overlay = true;
      break;
    }
  }

  return {
    tag: tag,
    id: el.id || null,
    name: name,
    nameUnique: nameUnique,
    type: (el.getAttribute('type') || '').toLowerCase() || null,
    role: el.getAttribute('role'),
    placeholder: el.getAttribute('placeholder'),
    ariaLabel: el.getAttribute('aria-label'),
    autocomplete: el.getAttribute('autocomplete'),
    classes: classesOf(el),
    uniqueClass: uniqueClass,
    text: textOf(el).slice(0, 200),
    labelFor: labelFor,
    nearbyLabel: nearbyLabel,
    clickable: clickable,
    ancestors: ancestors,
    overlay: overlay,
    point: point && point.x != null ? {x: point.x, y: point.y} : center,
    center: center,
    viewport: {width: window.innerWidth, height: window.innerHeight, scrollX: window.scrollX, scrollY: window.scrollY},
  };
}
"""

VIEWPORT_JS = r"""
function () {
  return {width: window.innerWidth, height: window.innerHeight, scrollX: window.scrollX, scrollY: window.scrollY};
}
"""

# Shared by HIT_AT_POINT_JS and FIND_BY_DESCRIPTOR_JS: map a raw hit to the element
# the step kind can act on, or null when the hit is not compatible.
_COMPATIBLE_JS = r"""
  const NON_TEXT = ['checkbox', 'radio', 'submit', 'button', 'file', 'image', 'reset', 'range', 'color', 'hidden'];
  const isTextField = (el) => el && (el.tagName === 'TEXTAREA' || el.isContentEditable ||
    (el.tagName === 'INPUT' && !NON_TEXT.includes((el.type || '').toLowerCase())));
  const textOf = (node) => (node.innerText || node.textContent || '').replace(/\s+/g, ' ').trim();
  const classesOf = (node) => (typeof node.className === 'string' ? node.className.trim().split(/\s+/).filter(Boolean) : []);
  const inOverlay = (el) => {
    for (let node = el; node && node.nodeType === 1; node = node.parentElement) {
      if ((node.id && arg.reserved.ids.includes(node.id)) || classesOf(node).some((c) => arg.reserved.classes.includes(c))) return true;
    }
    return false;
  };
  const compatible = (el) => {
    if (!el || el === document.documentElement || el === document.body || inOverlay(el)) return null;
    if (arg.kind === 'input') {
      if (isTextField(el)) return el;
      const control = el.tagName === 'LABEL' ? el.control : null;
      if (isTextField(control)) return control;
      const inner = el.querySelectorAll ? Array.from(el.querySelectorAll('input,textarea')).filter(isTextField) : [];
      return inner.length === 1 ? inner[0] : null;
    }
    if (arg.kind === 'select') {
      if (el.tagName === 'SELECT') return el;
      if (el.tagName === 'LABEL' && el.control && el.control.tagName === 'SELECT') return el.control;
      return el.closest ? el.closest('select') : null;
    }
    return (el.closest && el.closest('button,a,[role="button"],[role="link"],input[type="submit"],input[type="button"]')) || el;
  };
  const matchesDescriptor = (el) => {
    const d = arg.descriptor;
    if (!d) return true;
    if (d.strategy === 'text') {
      return textOf(el).toLowerCase().includes(d.text.toLowerCase());
    }
    if (d.strategy === 'semantic') {
      if (d.attribute === 'name') return el.getAttribute('name') === d.value;
      if (d.attribute === 'placeholder') return (el.getAttribute('placeholder') || '').trim() === d.value;
      if (d.attribute === 'aria-label') return (el.getAttribute('aria-label') || '').trim() === d.value;
      return true;
    }
    return true;
  };
  const mark = (el) => {
    el.setAttribute(arg.attribute, arg.token);
    return {found: true, tag: el.tagName.toLowerCase()};
  };
"""

HIT_AT_POINT_JS = r"""
function (arg) {
%s
  const hit = document.elementFromPoint(arg.x, arg.y);
  if (!hit) return {found: false, reason: 'no element at point'};
  const el = compatible(hit);
  if (!el) return {found: false, reason: 'incompatible element ' + hit.tagName.toLowerCase()};
  if (!matchesDescriptor(el)) return {found: false, reason: 'element at point does not match the recorded target'};
  return mark(el);
}
""" % _COMPATIBLE_JS

FIND_BY_DESCRIPTOR_JS = r"""
function (arg) {
%s
  const d = arg.descriptor;
  const visible = (el) => !!(el.offsetParent || (el.getClientRects && el.getClientRects().length));
  let candidates = [];
  try {
    if (d.strategy === 'semantic') {
      if (d.attribute === 'name') {
        candidates = Array.from(document.querySelectorAll(d.tag + '[name="' + CSS.escape(d.value) + '"]'));
      } else if (d.attribute === 'placeholder') {
        candidates = Array.from(document.querySelectorAll('[placeholder]')).filter((el) => el.getAttribute('placeholder').trim() === d.value);
      } else if (d.attribute === 'aria-label') {
        candidates = Array.from(document.querySelectorAll('[aria-label]')).filter((el) => el.getAttribute('aria-label').trim() === d.value);
      } else {
        for (const lbl of document.querySelectorAll('label')) {
          if (textOf(lbl) !== d.value) continue;
          const control = lbl.control || (lbl.htmlFor && document.getElementById(lbl.htmlFor)) || lbl.querySelector('input,textarea,select');
          if (control) candidates.push(control);
        }
      }
    } else if (d.strategy === 'text') {
      const pool = d.class_name ? document.querySelectorAll('.' + CSS.escape(d.class_name)) : document.querySelectorAll(d.tag);
      candidates = Array.from(pool).filter((el) => textOf(el) === d.text);
      if (!candidates.length) {
        candidates = Array.from(document.querySelectorAll('button,a,[role="button"],[role="link"]')).filter((el) => textOf(el) === d.text);
      }
    } else if (d.strategy === 'structural') {
      const selector = d.path.map((s) => s.tag + (s.id ? '#' + CSS.escape(s.id) : (s.class_name ? '.' + CSS.escape(s.class_name) : ''))).join(' > ');
      candidates = Array.from(document.querySelectorAll(selector));
    }
  } catch (e) {
    return {found: false, reason: 'descriptor query failed: ' + e.message};
  }
  const ordered = candidates.filter(visible).concat(candidates.filter((el) => !visible(el)));
  for (const candidate of ordered) {
    const el = compatible(candidate);
    if (el) return mark(el);
  }
  return {found: false, reason: 'no element matches ' + d.strategy + ' descriptor'};
}
""" % _COMPATIBLE_JS


# --- Resolution ---


class ResolutionStrategy(str, Enum):
    """How a step target was found during playback, in the order they are tried."""

    EXACT_POINT = "exact-point"
    ELEMENT_CENTER = "element-center"
    SCROLL_COMPENSATED = "scroll-compensated"
    DESCRIPTOR = "descriptor"


@dataclass(frozen=True, slots=True)
class Resolved:
    """A live element was found and tagged with ``token``."""

    strategy: ResolutionStrategy
    token: str
    tag: str | None = None

    @property
    def selector(self) -> str:
        return f'[{TARGET_ATTRIBUTE}="{self.token}"]'


@dataclass(frozen=True, slots=True)
class NotFound:
    """No strategy located the target."""

    reason: str


def _new_token() -> str:
    return uuid.uuid4().hex[:10]


def _step_kind(step: "InteractionStep") -> str:
    if isinstance(step, ClickStep):
        return "click"
    if isinstance(step, InputStep):
        return "input"
    return "select"


class SelectorResolver:
    """Locates the live element for a recorded step."""

    def __init__(
        self,
        reserved_ids: Iterable[str] = RESERVED_ELEMENT_IDS,
        reserved_classes: Iterable[str] = RESERVED_CLASSES,
        use_descriptor_fallback: bool = True,
    ):
        self.reserved = {"ids": list(reserved_ids), "classes": list(reserved_classes)}
        self.use_descriptor_fallback = use_descriptor_fallback

    async def resolve(self, page: "Page", step: "InteractionStep") -> Resolved | NotFound:
        """Find the element a step should act on.

        Coordinate strategies are tried first, then the target descriptor.

        Args:
            page: Live page to search
            step: Recorded step

        Returns:
            Resolved with the winning strategy, or NotFound with the last reason
        """
        token = _new_token()
        kind = _step_kind(step)
        descriptor = None if isinstance(step.target, CoordinateDescriptor) else step.target.model_dump(mode="json")
        reasons: list[str] = []

        for strategy, point in await self._candidate_points(page, step):
            arg = self._arg(kind, token, descriptor, x=point.x, y=point.y)
            result = await self._call(page, HIT_AT_POINT_JS, arg)
            if result.get("found"):
                logger.debug(f"Resolved step target via {strategy.value} at ({point.x:.0f}, {point.y:.0f})")
                return Resolved(strategy=strategy, token=token, tag=result.get("tag"))
            reasons.append(f"{strategy.value}: {result.get('reason', 'not found')}")

        if self.use_descriptor_fallback and descriptor is not None:
            result = await self._call(page, FIND_BY_DESCRIPTOR_JS, self._arg(kind, token, descriptor))
            if result.get("found"):
                logger.debug(f"Resolved step target via descriptor {step.target.key()}")
                return Resolved(strategy=ResolutionStrategy.DESCRIPTOR, token=token, tag=result.get("tag"))
            reasons.append(f"descriptor: {result.get('reason', 'not found')}")

        if not reasons:
            reasons.append("no coordinates and no usable descriptor")
        return NotFound(reason="; ".join(reasons))

    async def _candidate_points(self, page: "Page", step: "InteractionStep") -> list[tuple[ResolutionStrategy, Point]]:
        coords = step.coordinates
        if coords is None:
            return []
        points = [
            (ResolutionStrategy.EXACT_POINT, coords.point),
            (ResolutionStrategy.ELEMENT_CENTER, coords.element_center),
        ]
        current = await self._current_viewport(page)
        if current is not None:
            points.append((ResolutionStrategy.SCROLL_COMPENSATED, coords.scroll_compensated(current)))
        return points

    async def _current_viewport(self, page: "Page") -> ViewportSnapshot | None:
        try:
            raw = await page.call_function(VIEWPORT_JS)
            return ViewportSnapshot(
                width=float(raw["width"]),
                height=float(raw["height"]),
                scroll_x=float(raw.get("scrollX", 0.0)),
                scroll_y=float(raw.get("scrollY", 0.0)),
            )
        except (PageError, KeyError, TypeError, ValueError) as e:
            logger.debug(f"Could not read viewport: {e}")
            return None

    def _arg(self, kind: str, token: str, descriptor: dict | None, **extra: Any) -> dict[str, Any]:
        return {
            "kind": kind,
            "token": token,
            "attribute": TARGET_ATTRIBUTE,
            "descriptor": descriptor,
            "reserved": self.reserved,
            **extra,
        }

    async def _call(self, page: "Page", source: str, arg: dict[str, Any]) -> dict[str, Any]:
        try:
            result = await page.call_function(source, arg)
        except PageError as e:
            return {"found": False, "reason": str(e)}
        if not isinstance(result, dict):
            return {"found": False, "reason": f"unexpected result {json.dumps(result)[:80]}"}
        return result
