"""Scripts evaluated inside the page with ``page.evaluate``.

Each public constant is a single arrow function taking one JSON argument. The
shared helpers are prepended to every script because evaluations do not share
scope. The ``opid -> element`` map lives in ``window.__autofillBridge.sessions``
keyed by collection session id; a new collection discards older sessions.
"""

from __future__ import annotations

_HELPERS = r"""
  const registry = window.__autofillBridge || (window.__autofillBridge = { sessions: {}, listening: false });

  function toLower(value) {
    return value ? value.toString().toLowerCase() : '';
  }

  function querySelectorAllSafe(root, selector) {
    try {
      return Array.prototype.slice.call(root.querySelectorAll(selector));
    } catch (e) {
      console.error('[autofill-bridge] querySelectorAll failed for selector "' + selector + '"');
      return [];
    }
  }

  function collectableElements(doc) {
    return querySelectorAllSafe(doc, 'input, select, button');
  }

  function elementForOpid(sessionId, opid) {
    if (opid === undefined || opid === null) {
      return null;
    }
    const map = registry.sessions[sessionId];
    if (map && map[opid]) {
      return map[opid];
    }
    const all = collectableElements(document);
    const matches = all.filter(function (el) { return el.__autofillOpid === opid; });
    if (matches.length > 0) {
      if (matches.length > 1) {
        console.warn('[autofill-bridge] more than one element found with opid ' + opid);
      }
      return matches[0];
    }
    const index = parseInt(String(opid).split('__')[1], 10);
    return isNaN(index) ? null : (all[index] || null);
  }

  function isVisible(el) {
    const doc = el.ownerDocument;
    const win = doc ? doc.defaultView : null;
    let node = el;
    while (node && node !== doc) {
      const style = win && win.getComputedStyle && node instanceof Element ? win.getComputedStyle(node, null) : node.style;
      if (!style) {
        return true;
      }
      if (style.display === 'none' || style.visibility === 'hidden') {
        return false;
      }
      node = node.parentNode;
    }
    return node === doc;
  }

  function isViewable(el) {
    const root = el.ownerDocument.documentElement;
    const rect = el.getBoundingClientRect();
    const scrollWidth = root.scrollWidth;
    const scrollHeight = root.scrollHeight;
    const left = rect.left - root.clientLeft;
    const top = rect.top - root.clientTop;
    if (!isVisible(el) || !el.offsetParent || el.clientWidth < 10 || el.clientHeight < 10) {
      return false;
    }
    const clientRects = el.getClientRects();
    if (clientRects.length === 0) {
      return false;
    }
    for (let i = 0; i < clientRects.length; i++) {
      if (clientRects[i].left > scrollWidth || clientRects[i].right < 0) {
        return false;
      }
    }
    if (left < 0 || left > scrollWidth || top < 0 || top > scrollHeight) {
      return false;
    }
    const x = left + (rect.right > window.innerWidth ? (window.innerWidth - left) / 2 : rect.width / 2);
    const y = top + (rect.bottom > window.innerHeight ? (window.innerHeight - top) / 2 : rect.height / 2);
    let hit = el.ownerDocument.elementFromPoint(x, y);
    while (hit && hit !== el && hit !== document) {
      if (hit.tagName && toLower(hit.tagName) === 'label' && el.labels && el.labels.length > 0) {
        return Array.prototype.slice.call(el.labels).indexOf(hit) >= 0;
      }
      hit = hit.parentNode;
    }
    return hit === el;
  }

  function isTextInput(el) {
    return !!el && toLower(el.nodeName) === 'input' && String(el.type).search(/button|submit|reset|hidden|checkbox/i) === -1;
  }

  function makeEvent(el, type) {
    const ev = el.ownerDocument.createEvent('Events');
    ev.initEvent(type, true, false);
    ev.charCode = 0;
    ev.keyCode = 0;
    ev.which = 0;
    return ev;
  }

  function clickAndFocus(el, keepValue) {
    if (!el) {
      return false;
    }
    const before = keepValue ? el.value : undefined;
    if (typeof el.click === 'function') {
      el.click();
    }
    if (typeof el.focus === 'function') {
      el.focus();
    }
    if (keepValue && el.value !== before) {
      el.value = before;
    }
    return typeof el.click === 'function' || typeof el.focus === 'function';
  }

  function restoreIfBlanked(el, value) {
    const initial = el.dataset ? el.dataset.autofillBridgeInitialValue : undefined;
    if (el.value === '' || (initial && el.value === initial)) {
      el.value = value;
    }
  }

  function dispatchKeys(el) {
    el.dispatchEvent(makeEvent(el, 'keydown'));
    el.dispatchEvent(makeEvent(el, 'keypress'));
    el.dispatchEvent(makeEvent(el, 'keyup'));
  }

  function beforeValueChange(el, probe) {
    const value = el.value;
    if (probe) {
      clickAndFocus(el, false);
    }
    dispatchKeys(el);
    restoreIfBlanked(el, value);
  }

  function afterValueChange(el) {
    const value = el.value;
    dispatchKeys(el);
    el.dispatchEvent(new Event('input', { bubbles: true, cancelable: true }));
    el.dispatchEvent(new Event('change', { bubbles: true, cancelable: true }));
    el.blur();
    restoreIfBlanked(el, value);
  }

  function textOf(el) {
    return el.textContent || el.innerText;
  }

  function cleanText(text) {
    if (!text) {
      return null;
    }
    const cleaned = text.replace(/^\s+|\s+$|\r?\n.*$/mg, '').replace(/\s{2,}/, ' ');
    return cleaned.length > 0 ? cleaned : null;
  }
"""

COLLECT_FIELDS_SCRIPT = (
    "(args) => {\n"
    + _HELPERS
    + r"""
  const BOUNDARY_TAGS = ['select', 'option', 'input', 'form', 'textarea', 'button', 'table', 'iframe', 'body', 'head', 'script'];
  const MAX_LEFT_LABEL_DEPTH = 20;
  const doc = document;
  const sessionId = args.sessionId;
  const maxLength = args.maxLength;
  const hiddenValueLimit = args.hiddenValueLimit;

  function setIfPresent(target, key, value, skipValue) {
    if ((skipValue !== undefined && value === skipValue) || value === null || value === undefined) {
      return;
    }
    target[key] = value;
  }

  function attr(el, name) {
    const prop = el[name];
    if (typeof prop === 'string') {
      return prop;
    }
    const value = el.getAttribute(name);
    return typeof value === 'string' ? value : null;
  }

  function isBoundary(node) {
    if (!node) {
      return true;
    }
    return BOUNDARY_TAGS.indexOf(toLower(node.tagName)) >= 0;
  }

  function pushText(parts, node) {
    let text = '';
    if (node.nodeType === 3) {
      text = node.nodeValue;
    } else if (node.nodeType === 1) {
      text = textOf(node);
    }
    const cleaned = cleanText(text);
    if (cleaned) {
      parts.push(cleaned);
    }
  }

  function labelTag(el) {
    let labels = [];
    if (el.labels && el.labels.length > 0) {
      labels = Array.prototype.slice.call(el.labels);
    } else {
      if (el.id) {
        labels = labels.concat(querySelectorAllSafe(doc, 'label[for=' + JSON.stringify(el.id) + ']'));
      }
      if (el.name) {
        querySelectorAllSafe(doc, 'label[for=' + JSON.stringify(el.name) + ']').forEach(function (label) {
          if (labels.indexOf(label) === -1) {
            labels.push(label);
          }
        });
      }
      for (let node = el; node && node !== doc; node = node.parentNode) {
        if (toLower(node.tagName) === 'label' && labels.indexOf(node) === -1) {
          labels.push(node);
        }
      }
    }
    if (labels.length === 0) {
      const parent = el.parentNode;
      if (parent && toLower(parent.tagName) === 'dd' && parent.previousElementSibling
          && toLower(parent.previousElementSibling.tagName) === 'dt') {
        labels.push(parent.previousElementSibling);
      }
    }
    if (labels.length === 0) {
      return null;
    }
    return labels.map(function (label) { return cleanText(textOf(label)); }).filter(Boolean).join('');
  }

  function labelTop(el) {
    let cell = el.parentElement || el.parentNode;
    while (cell && toLower(cell.tagName) !== 'td') {
      cell = cell.parentElement || cell.parentNode;
    }
    if (!cell || cell === doc) {
      return null;
    }
    const row = cell.parentElement || cell.parentNode;
    if (!row || toLower(row.tagName) !== 'tr') {
      return null;
    }
    const previousRow = row.previousElementSibling;
    if (!previousRow || toLower(previousRow.tagName) !== 'tr'
        || (previousRow.cells && cell.cellIndex >= previousRow.cells.length)) {
      return null;
    }
    return cleanText(textOf(previousRow.cells[cell.cellIndex]));
  }

  function labelRight(el) {
    const parts = [];
    let node = el;
    while (node && node.nextSibling) {
      node = node.nextSibling;
      if (isBoundary(node)) {
        break;
      }
      pushText(parts, node);
    }
    return parts.join('');
  }

  function collectLeft(node, parts, depth) {
    while (node && node.previousSibling) {
      node = node.previousSibling;
      if (isBoundary(node)) {
        return;
      }
      pushText(parts, node);
    }
    if (node && parts.length === 0 && depth < MAX_LEFT_LABEL_DEPTH) {
      let candidate = null;
      while (!candidate) {
        node = node.parentElement || node.parentNode;
        if (!node) {
          return;
        }
        candidate = node.previousSibling;
        while (candidate && !isBoundary(candidate) && candidate.lastChild) {
          candidate = candidate.lastChild;
        }
      }
      if (!isBoundary(candidate)) {
        pushText(parts, candidate);
        if (parts.length === 0) {
          collectLeft(candidate, parts, depth + 1);
        }
      }
    }
  }

  function labelLeft(el) {
    const parts = [];
    collectLeft(el, parts, 0);
    return parts.reverse().join('');
  }

  function selectInfo(el) {
    if (!el.options) {
      return null;
    }
    const options = Array.prototype.slice.call(el.options).map(function (option) {
      let text = option.text ? toLower(option.text).replace(/\s/mg, '').replace(/[~`!@$%^&*()\-_+=:;'"\[\]|\\,<.>\/?]/mg, '') : null;
      return [text ? text : null, option.value];
    });
    return { options: options };
  }

  function fieldValue(el) {
    switch (toLower(el.type)) {
      case 'checkbox':
        return el.checked ? '✓' : '';
      case 'hidden': {
        let value = el.value;
        if (!value || typeof value.length !== 'number') {
          return '';
        }
        if (value.length > hiddenValueLimit) {
          value = value.substr(0, hiddenValueLimit) + '...SNIPPED';
        }
        return value;
      }
      case 'submit':
      case 'button':
      case 'reset':
        if (el.value === '') {
          return cleanText(textOf(el)) || '';
        }
        return el.value;
      default:
        return el.value;
    }
  }

  if (!registry.listening) {
    doc.addEventListener('input', function (ev) {
      if (ev.isTrusted !== false && toLower(ev.target.tagName) === 'input') {
        ev.target.dataset.autofillBridgeUserEdited = 'yes';
      }
    }, true);
    registry.listening = true;
  }

  const opidMap = {};
  registry.sessions = {};
  registry.sessions[sessionId] = opidMap;
  registry.current = sessionId;

  const forms = {};
  querySelectorAllSafe(doc, 'form').forEach(function (form, index) {
    const opid = '__form__' + index;
    form.__autofillOpid = opid;
    const info = { opid: opid };
    setIfPresent(info, 'htmlName', attr(form, 'name'));
    setIfPresent(info, 'htmlID', attr(form, 'id'));
    let action = attr(form, 'action');
    try {
      action = new URL(action || '', window.location.href).href;
    } catch (e) {
      action = null;
    }
    setIfPresent(info, 'htmlAction', action);
    setIfPresent(info, 'htmlMethod', attr(form, 'method'));
    forms[opid] = info;
  });

  const fields = collectableElements(doc).map(function (el, index) {
    if (isTextInput(el) && el.hasAttribute('value') && !el.dataset.autofillBridgeInitialValue) {
      el.dataset.autofillBridgeInitialValue = el.value;
    }
    const opid = '__' + index;
    let limit = el.maxLength === -1 ? maxLength : el.maxLength;
    if (!limit || (typeof limit === 'number' && isNaN(limit)) || limit < 0) {
      limit = maxLength;
    }
    opidMap[opid] = el;
    el.__autofillOpid = opid;

    const info = { opid: opid, elementNumber: index };
    setIfPresent(info, 'maxLength', Math.min(limit, maxLength), maxLength);
    info.visible = isVisible(el);
    info.viewable = isViewable(el);
    setIfPresent(info, 'htmlID', attr(el, 'id'));
    setIfPresent(info, 'htmlName', attr(el, 'name'));
    setIfPresent(info, 'htmlClass', attr(el, 'class'));
    setIfPresent(info, 'tabindex', attr(el, 'tabindex'));
    setIfPresent(info, 'title', attr(el, 'title'));
    setIfPresent(info, 'userEdited', !!(el.dataset && el.dataset.autofillBridgeUserEdited));

    if (toLower(el.type) !== 'hidden') {
      setIfPresent(info, 'label-tag', labelTag(el));
      setIfPresent(info, 'label-data', attr(el, 'data-label'));
      setIfPresent(info, 'label-aria', attr(el, 'aria-label'));
      setIfPresent(info, 'label-top', labelTop(el));
      setIfPresent(info, 'label-right', labelRight(el));
      setIfPresent(info, 'label-left', labelLeft(el));
      setIfPresent(info, 'placeholder', attr(el, 'placeholder'));
    }

    setIfPresent(info, 'rel', attr(el, 'rel'));
    setIfPresent(info, 'type', toLower(attr(el, 'type')));
    setIfPresent(info, 'value', fieldValue(el));
    setIfPresent(info, 'checked', el.checked, false);
    setIfPresent(info, 'autoCompleteType',
      el.getAttribute('x-autocompletetype') || el.getAttribute('autocompletetype') || el.getAttribute('autocomplete'), 'off');
    setIfPresent(info, 'disabled', el.disabled);
    setIfPresent(info, 'readonly', el.readOnly);
    setIfPresent(info, 'selectInfo', selectInfo(el));
    setIfPresent(info, 'aria-hidden', el.getAttribute('aria-hidden') === 'true', false);
    setIfPresent(info, 'aria-disabled', el.getAttribute('aria-disabled') === 'true', false);
    setIfPresent(info, 'aria-haspopup', el.getAttribute('aria-haspopup') === 'true', false);
    setIfPresent(info, 'data-unmasked', el.dataset.unmasked);
    setIfPresent(info, 'data-stripe', attr(el, 'data-stripe'));
    setIfPresent(info, 'data-braintree-name', attr(el, 'data-braintree-name'));
    setIfPresent(info, 'onepasswordFieldType', el.dataset.onepasswordFieldType || el.type);
    setIfPresent(info, 'onepasswordDesignation', el.dataset.onepasswordDesignation);
    setIfPresent(info, 'onepasswordSignInUrl', el.dataset.onepasswordSignInUrl);
    setIfPresent(info, 'onepasswordSectionTitle', el.dataset.onepasswordSectionTitle);
    if (el.form && el.form.__autofillOpid) {
      info.form = el.form.__autofillOpid;
    }
    return info;
  });

  const details = {
    documentUUID: sessionId,
    title: doc.title,
    url: window.location.href,
    documentURL: doc.location.href,
    forms: forms,
    fields: fields,
    collectedTimestamp: Date.now(),
  };
  const titled = doc.querySelector('[data-onepassword-title]');
  if (titled && titled.dataset.onepasswordTitle) {
    details.displayTitle = titled.dataset.onepasswordTitle;
  }
  return JSON.stringify(details);
}"""
)

FAKE_TEST_SCRIPT = (
    "(args) => {\n"
    + _HELPERS
    + r"""
  const active = document.activeElement;
  const results = {};
  (args.opids || []).forEach(function (opid) {
    const el = elementForOpid(args.sessionId, opid);
    if (!el) {
      return;
    }
    let shouldTest;
    if (!isVisible(el)) {
      shouldTest = true;
    } else if (toLower(el.type) === 'password') {
      shouldTest = false;
    } else {
      const typeBefore = el.type;
      clickAndFocus(el, true);
      shouldTest = typeBefore !== el.type;
    }
    if (!shouldTest) {
      results[opid] = { fakeTested: false };
      return;
    }
    el.getBoundingClientRect();
    beforeValueChange(el, true);
    if (el.click) {
      el.click();
    }
    const result = {
      fakeTested: true,
      postFakeTestVisible: isVisible(el),
      postFakeTestViewable: isViewable(el),
      postFakeTestType: el.type,
    };
    afterValueChange(el);
    results[opid] = result;
  });
  if (active && isTextInput(active)) {
    clickAndFocus(active, true);
  }
  return results;
}"""
)

FILL_OPERATION_SCRIPT = (
    "(args) => {\n"
    + _HELPERS
    + r"""
  const TRUTHY = { 'true': true, 'y': true, '1': true, 'yes': true, '✓': true };
  const ANIMATED_CLASS = 'autofill-bridge-animated-fill';
  const ANIMATED_TYPES = ['email', 'text', 'password', 'number', 'tel', 'url'];
  const ANIMATION_MS = 200;
  const sessionId = args.sessionId;
  const flags = args.flags || {};

  function isTruthy(value) {
    const text = String(value);
    return text.length >= 1 && TRUTHY[text.toLowerCase()] === true;
  }

  function animate(el) {
    if (!flags.animate || !isVisible(el) || ANIMATED_TYPES.indexOf(el.type || '') === -1) {
      return;
    }
    el.classList.add(ANIMATED_CLASS);
    setTimeout(function () { el.classList.remove(ANIMATED_CLASS); }, ANIMATION_MS);
  }

  function setWithEvents(el, setter) {
    beforeValueChange(el, flags.unmaskProbe);
    setter(el);
    afterValueChange(el);
    animate(el);
  }

  function fillElement(el, value) {
    if (!el || value === null || value === undefined || el.disabled || el.readOnly) {
      return false;
    }
    if (flags.markFilling && el.dataset && !el.dataset.autofillBridgeFilled) {
      el.dataset.autofillBridgeFilled = 'yes';
      if (el.form) {
        el.form.dataset.autofillBridgeFilled = 'yes';
      }
    }
    switch (toLower(el.type)) {
      case 'checkbox': {
        const checked = isTruthy(value);
        if (el.checked !== checked) {
          setWithEvents(el, function (target) { target.checked = checked; });
        }
        return true;
      }
      case 'radio':
        if (isTruthy(value)) {
          el.click();
        }
        return true;
      default:
        if (el.value != value) {
          setWithEvents(el, function (target) { target.value = value; });
        }
        return true;
    }
  }

  const operations = {
    fill_by_opid: function (opid, value) {
      const el = elementForOpid(sessionId, opid);
      return el && fillElement(el, value) ? [el] : [];
    },
    fill_by_query: function (selector, value) {
      return querySelectorAllSafe(document, selector).filter(function (el) { return fillElement(el, value); });
    },
    simple_set_value_by_query: function (selector, value) {
      const touched = [];
      querySelectorAllSafe(document, selector).forEach(function (el) {
        if (!el.disabled && !el.readOnly && el.value !== undefined) {
          el.value = value;
          touched.push(el);
        }
      });
      return touched;
    },
    focus_by_opid: function (opid) {
      const el = elementForOpid(sessionId, opid);
      if (el) {
        clickAndFocus(el, true);
      }
      return [];
    },
    click_on_opid: function (opid) {
      const el = elementForOpid(sessionId, opid);
      return el && clickAndFocus(el, false) ? [el] : [];
    },
    click_on_query: function (selector) {
      return querySelectorAllSafe(document, selector).filter(function (el) { return clickAndFocus(el, true); });
    },
    touch_all_fields: function () {
      const pattern = new RegExp(args.passwordPattern, 'i');
      querySelectorAllSafe(document, "input[type='text']").filter(function (el) {
        return el.value && pattern.test(el.value);
      }).forEach(function (el) {
        const original = el.value;
        beforeValueChange(el, true);
        if (el.click) {
          el.click();
        }
        afterValueChange(el);
        if (el.value !== original) {
          el.value = original;
        }
      });
      return [];
    },
  };

  if (!operations.hasOwnProperty(args.operation)) {
    return null;
  }
  const touched = operations[args.operation].apply(null, args.parameters || []);
  return touched.map(function (el) { return el.__autofillOpid || null; });
}"""
)

DOWNGRADE_CHECK_SCRIPT = r"""() => ({
  protocol: document.location.protocol,
  passwordFields: document.querySelectorAll('input[type=password]').length,
})"""

AUTOSUBMIT_SCRIPT = (
    "(args) => {\n"
    + _HELPERS
    + r"""
  const rules = args.rules;
  const sessionId = args.sessionId;

  function matchesAny(titles, text) {
    if (!text) {
      return false;
    }
    const lowered = text.trim().toLowerCase();
    return titles.some(function (title) {
      if (title.indexOf('re:') === 0) {
        return new RegExp(title.slice(3), 'i').test(lowered);
      }
      return lowered.indexOf(title.toLowerCase()) !== -1;
    });
  }

  function buttonText(el) {
    return cleanText(el.value || textOf(el) || el.getAttribute('aria-label') || el.title || '') || '';
  }

  function isExcluded(text) {
    return matchesAny(rules.loginRedHerringTitles, text)
      || matchesAny(rules.registerTitles, text)
      || matchesAny(rules.searchTitles, text)
      || matchesAny(rules.forgotPasswordTitles, text)
      || matchesAny(rules.rememberMeTitles, text)
      || matchesAny(rules.backTitles, text);
  }

  const used = args.usedOpids || [];
  const anchor = elementForOpid(sessionId, args.focusOpid) || elementForOpid(sessionId, used[used.length - 1]);
  if (!anchor) {
    return { submitted: false, reason: 'no_anchor' };
  }
  const form = anchor.form || (anchor.closest ? anchor.closest('form') : null);
  const scope = form || document;
  const buttons = querySelectorAllSafe(scope, "button, input[type='submit'], input[type='button'], input[type='image']")
    .filter(isVisible);

  let target = buttons.find(function (button) {
    const text = buttonText(button);
    return (matchesAny(rules.loginTitles, text) || matchesAny(rules.changePasswordTitles, text)) && !isExcluded(text);
  });
  if (!target) {
    target = buttons.find(function (button) {
      return toLower(button.type) === 'submit' && !isExcluded(buttonText(button));
    });
  }
  if (!target && args.allowClicky && rules.divitisButtonClasses.length > 0) {
    const selector = rules.divitisButtonClasses.map(function (cls) { return '.' + cls; }).join(', ');
    target = querySelectorAllSafe(scope, selector).filter(isVisible).find(function (el) {
      return matchesAny(rules.loginTitles, buttonText(el));
    });
  }
  if (target) {
    target.click();
    return { submitted: true, method: 'click' };
  }
  if (form) {
    if (typeof form.requestSubmit === 'function') {
      form.requestSubmit();
    } else {
      form.submit();
    }
    return { submitted: true, method: 'form' };
  }
  return { submitted: false, reason: 'no_target' };
}"""
)
