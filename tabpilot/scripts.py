"""In-page JavaScript evaluated inside tabpilot's isolated worlds.

Every script is a single function expression; ``CdpSession.evaluate`` calls it
with one JSON argument.
"""

from __future__ import annotations

QUERY_OP_SCRIPT = """
(input) => {
  const normalize = (value) => String(value == null ? "" : value).replace(/\\s+/g, " ").trim();
  const lower = (value) => normalize(value).toLowerCase();
  const PREVIEW_MAX = 180;

  const hintFor = (el) => {
    if (!el || typeof el.tagName !== "string") return null;
    let hint = el.tagName.toLowerCase();
    if (typeof el.id === "string" && el.id) hint += "#" + el.id;
    const classes = typeof el.className === "string" ? normalize(el.className).split(" ").filter(Boolean) : [];
    for (const name of classes.slice(0, 2)) hint += "." + name;
    return hint;
  };

  const isVisible = (el) => {
    if (!el) return false;
    if (el.hasAttribute && el.hasAttribute("hidden")) return false;
    const style = window.getComputedStyle ? window.getComputedStyle(el) : null;
    if (style && (style.display === "none" || style.visibility === "hidden" || style.opacity === "0")) return false;
    return el.getClientRects ? el.getClientRects().length > 0 : false;
  };

  const textFor = (el) => {
    if (!el) return "";
    const tag = typeof el.tagName === "string" ? el.tagName.toLowerCase() : "";
    if (tag === "input" || tag === "textarea" || tag === "select") {
      return el.getAttribute("aria-label") || el.getAttribute("placeholder") || el.getAttribute("name") || el.id || el.value || "";
    }
    return el.innerText || el.textContent || el.getAttribute("aria-label") || el.getAttribute("title") || "";
  };

  const hrefFor = (el) => {
    if (!el) return null;
    const anchor = (el.matches && el.matches("a[href]")) ? el : ((el.closest && el.closest("a[href]")) || (el.querySelector && el.querySelector("a[href]")));
    const href = anchor ? (anchor.getAttribute("href") || anchor.href) : null;
    return typeof href === "string" && href.trim() ? href : null;
  };

  const describe = (el) => ({
    visible: isVisible(el),
    text: normalize(textFor(el)).slice(0, PREVIEW_MAX),
    selectorHint: hintFor(el),
    href: hrefFor(el),
  });

  if (input.op === "wait-selector-visible") {
    const found = document.querySelector(String(input.waitSelector || ""));
    return Boolean(found && isVisible(found));
  }
  if (input.op === "wait-text-visible") {
    const needle = lower(input.waitText);
    const haystack = lower(document.body ? document.body.innerText : "");
    return needle.length > 0 && haystack.includes(needle);
  }

  const within = typeof input.withinSelector === "string" ? input.withinSelector.trim() : "";
  let root = null;
  if (!within) {
    root = document.body;
  } else {
    try {
      root = document.querySelector(within);
    } catch (err) {
      root = null;
    }
  }
  const attrNames = Array.isArray(input.attrNames) ? input.attrNames : [];
  const fillValue = typeof input.fillValue === "string" ? input.fillValue : "";
  const emptyAria = () => {
    const values = {};
    for (const name of attrNames) values[name] = null;
    return { detached: true, values };
  };

  if (!root) {
    if (input.op === "summary") return { rawCount: 0, firstVisibleIndex: null };
    if (input.op === "invisible") return { rejected: [], rejectedTruncated: false };
    if (input.op === "aria") return emptyAria();
    if (input.op === "fill") return { filled: false, valueLength: fillValue.length, eventsDispatched: [] };
    return { ok: false };
  }

  const CANDIDATES = "a,button,input,textarea,select,option,label,summary," +
    "[role=\\"button\\"],[role=\\"link\\"],[role=\\"menuitem\\"],[role=\\"tab\\"],[role=\\"checkbox\\"]," +
    "[role=\\"radio\\"],[role=\\"option\\"],[role=\\"heading\\"],h1,h2,h3,h4,h5,h6,[tabindex]:not([tabindex=\\"-1\\"])";

  const collect = () => {
    if ((input.mode || "selector") === "selector") {
      const nodes = Array.from(root.querySelectorAll(String(input.selector || "")));
      const contains = typeof input.contains === "string" && input.contains.trim() ? lower(input.contains) : null;
      return contains ? nodes.filter((el) => lower(textFor(el)).includes(contains)) : nodes;
    }
    const needle = lower(input.query);
    const nodes = Array.from(root.querySelectorAll(CANDIDATES));
    const exact = nodes.filter((el) => lower(textFor(el)) === needle);
    return (exact.length ? exact : nodes).filter((el) => lower(textFor(el)).includes(needle));
  };

  const matches = collect();
  const index = typeof input.index === "number" ? input.index : -1;
  const node = index >= 0 ? (matches[index] || null) : null;

  const scrollToCenter = (el) => {
    try {
      el.scrollIntoView({ block: "center", inline: "center" });
    } catch (err) {}
  };

  switch (input.op) {
    case "summary": {
      let firstVisibleIndex = null;
      for (let i = 0; i < matches.length; i += 1) {
        if (isVisible(matches[i])) {
          firstVisibleIndex = i;
          break;
        }
      }
      return { rawCount: matches.length, firstVisibleIndex };
    }
    case "preview":
      return node ? Object.assign({ ok: true }, describe(node)) : { ok: false };
    case "click": {
      if (!node) return { ok: false };
      scrollToCenter(node);
      const info = describe(node);
      node.click();
      return Object.assign({ ok: true }, info);
    }
    case "focus": {
      if (!node) return { ok: false };
      scrollToCenter(node);
      try {
        node.focus();
      } catch (err) {}
      return Object.assign({ ok: true }, describe(node));
    }
    case "click-point": {
      if (!node) return { ok: false };
      scrollToCenter(node);
      const rect = node.getBoundingClientRect();
      let x = rect.left + rect.width / 2;
      let y = rect.top + rect.height / 2;
      try {
        let win = window;
        for (let depth = 0; depth < 16; depth += 1) {
          const frameEl = win.frameElement;
          if (!frameEl) break;
          const frameRect = frameEl.getBoundingClientRect();
          x += frameRect.left;
          y += frameRect.top;
          if (!win.parent || win.parent === win) break;
          win = win.parent;
        }
      } catch (err) {}
      if (!Number.isFinite(x) || !Number.isFinite(y)) return { ok: false };
      return Object.assign({ ok: true, x, y }, describe(node));
    }
    case "invisible": {
      const limit = typeof input.stopExclusive === "number" ? input.stopExclusive : matches.length;
      const stop = Math.max(0, Math.min(limit, matches.length));
      const cap = Math.max(0, typeof input.maxRejected === "number" ? input.maxRejected : 0);
      const rejected = [];
      let rejectedTruncated = false;
      for (let i = 0; i < stop; i += 1) {
        if (isVisible(matches[i])) continue;
        if (rejected.length >= cap) {
          rejectedTruncated = true;
          break;
        }
        const info = describe(matches[i]);
        rejected.push({ index: i, visible: false, text: info.text, selectorHint: info.selectorHint });
      }
      return { rejected, rejectedTruncated };
    }
    case "aria": {
      if (!node) return emptyAria();
      const values = {};
      for (const name of attrNames) values[name] = node.getAttribute(name);
      return { detached: false, values };
    }
    case "fill": {
      if (!node) return { filled: false, valueLength: fillValue.length, eventsDispatched: [] };
      const tag = typeof node.tagName === "string" ? node.tagName.toLowerCase() : "";
      const formField = tag === "input" || tag === "textarea" || tag === "select";
      if (!formField && !node.isContentEditable) {
        return { filled: false, valueLength: fillValue.length, eventsDispatched: [] };
      }
      try {
        node.focus();
      } catch (err) {}
      if (formField) {
        node.value = fillValue;
      } else {
        node.textContent = fillValue;
      }
      const eventsDispatched = [];
      for (const name of Array.isArray(input.fillEvents) ? input.fillEvents : []) {
        try {
          node.dispatchEvent(new Event(name, { bubbles: true }));
          eventsDispatched.push(name);
        } catch (err) {}
      }
      return { filled: true, valueLength: fillValue.length, eventsDispatched };
    }
    default:
      return { ok: false };
  }
}
"""

SELECTOR_CHECK_SCRIPT = """
(selector) => {
  try {
    document.querySelector(selector);
    return { ok: true, errorName: null };
  } catch (err) {
    return { ok: false, errorName: err && err.name ? String(err.name) : "Error" };
  }
}
"""

DELTA_PROBE_SCRIPT = """
(input) => {
  const normalize = (value) => String(value == null ? "" : value).replace(/\\s+/g, " ").trim();
  const active = document.activeElement;
  let selectorHint = null;
  let text = null;
  let textTruncated = false;
  if (active && active !== document.body && typeof active.tagName === "string") {
    selectorHint = active.tagName.toLowerCase();
    if (active.id) selectorHint += "#" + active.id;
    const classes = typeof active.className === "string" ? normalize(active.className).split(" ").filter(Boolean) : [];
    for (const name of classes.slice(0, 2)) selectorHint += "." + name;
    const raw = normalize(active.innerText || active.value || active.getAttribute("aria-label") || "");
    if (raw) {
      textTruncated = raw.length > input.focusTextMax;
      text = raw.slice(0, input.focusTextMax);
    }
  }
  const count = (selector) => document.querySelectorAll(selector).length;
  return {
    focus: { selectorHint, text, textTruncated },
    roleCounts: {
      dialog: count("dialog,[role=\\"dialog\\"]"),
      alert: count("[role=\\"alert\\"]"),
      status: count("[role=\\"status\\"],output"),
      menu: count("[role=\\"menu\\"]"),
      listbox: count("[role=\\"listbox\\"],select"),
    },
  };
}
"""

BODY_TEXT_SCRIPT = """
(maxChars) => {
  const text = String(document.body ? document.body.innerText : "").replace(/\\s+/g, " ").trim();
  return maxChars > 0 ? text.slice(0, maxChars) : text;
}
"""

ACTIVE_TEXT_SCRIPT = """
(maxChars) => {
  const active = document.activeElement;
  if (!active) return "";
  const raw = typeof active.value === "string" ? active.value : (active.innerText || active.textContent || "");
  return String(raw).replace(/\\s+/g, " ").trim().slice(0, maxChars);
}
"""

IS_FILE_INPUT_SCRIPT = """
(el) => el instanceof HTMLInputElement && String(el.type || "").toLowerCase() === "file"
"""
