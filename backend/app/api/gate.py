"""
Gate API - redirect handler.

GET  /go         quick decision: 302 redirect or the telemetry interstitial
POST /go/verify  telemetry -> {decision, redirectUrl, score[, redirectDelayMs]}
GET  /health     service status

Every decision response is marked uncacheable so that a verdict for one
visitor is never replayed to another.
"""
import json
from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from loguru import logger

from trafficgate.pipeline import GateOutcome, GateRequest

router = APIRouter(tags=["Gate"])

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

VERIFY_PATH = "/go/verify"

INTERSTITIAL_TEMPLATE = """<!DOCTYPE html>
<html lang="en"><head>
<meta charset="UTF-8" />
<meta name="viewport" content="width=device-width, initial-scale=1" />
<meta name="robots" content="noindex, nofollow" />
<title>Loading...</title>
<style>
body { font-family: system-ui, sans-serif; display: flex; align-items: center;
       justify-content: center; height: 100vh; margin: 0; color: #555; }
</style>
</head><body>
<p>Loading, please wait...</p>
<script>
(function () {
  var TOKEN = __TOKEN__, VERIFY = __VERIFY__, WINDOW_MS = __WINDOW__, MAX = 500;
  var start = Date.now(), path = [], c = {scroll: 0, click: 0, key: 0, touch: 0};
  function on(ev, fn) { window.addEventListener(ev, fn, {passive: true}); }
  on("mousemove", function (e) {
    if (path.length < MAX) path.push({x: e.clientX, y: e.clientY, t: Date.now() - start});
  });
  on("scroll", function () { c.scroll++; });
  on("click", function () { c.click++; });
  on("keydown", function () { c.key++; });
  on("touchstart", function () { c.touch++; });
  function hash(s) {
    var h = 0;
    for (var i = 0; i < s.length; i++) { h = ((h << 5) - h + s.charCodeAt(i)) | 0; }
    return (h >>> 0).toString(16);
  }
  function fingerprint() {
    var fp = {
      screenResolution: screen.width + "x" + screen.height,
      colorDepth: screen.colorDepth,
      timezoneOffset: new Date().getTimezoneOffset(),
      language: navigator.language || "",
      languages: Array.prototype.slice.call(navigator.languages || []),
      platform: navigator.platform || "",
      userAgent: navigator.userAgent,
      hardwareConcurrency: navigator.hardwareConcurrency || null,
      deviceMemory: navigator.deviceMemory || null,
      maxTouchPoints: navigator.maxTouchPoints || 0,
      plugins: Array.prototype.map.call(navigator.plugins || [], function (p) { return p.name; })
    };
    try { fp.timezone = Intl.DateTimeFormat().resolvedOptions().timeZone || ""; } catch (e) {}
    try {
      var cv = document.createElement("canvas"), ctx = cv.getContext("2d");
      ctx.textBaseline = "top"; ctx.font = "14px Arial"; ctx.fillText("gate,\\u263a", 2, 2);
      fp.canvasHash = hash(cv.toDataURL());
    } catch (e) {}
    try {
      var gl = document.createElement("canvas").getContext("webgl");
      var dbg = gl && gl.getExtension("WEBGL_debug_renderer_info");
      if (dbg) {
        fp.webglVendor = gl.getParameter(dbg.UNMASKED_VENDOR_WEBGL);
        fp.webglRenderer = gl.getParameter(dbg.UNMASKED_RENDERER_WEBGL);
      }
    } catch (e) {}
    return fp;
  }
  function send() {
    var body = {
      token: TOKEN, mousePath: path, dwellTimeMs: Date.now() - start,
      scrollEvents: c.scroll, clickEvents: c.click, keypressEvents: c.key,
      touchEvents: c.touch, fingerprint: fingerprint()
    };
    fetch(VERIFY, {method: "POST", headers: {"Content-Type": "application/json"},
                   body: JSON.stringify(body), credentials: "same-origin"})
      .then(function (r) { return r.json(); })
      .then(function (res) {
        if (res.redirectUrl) {
          setTimeout(function () { window.location.replace(res.redirectUrl); }, res.redirectDelayMs || 0);
        }
        else if (res.token) { TOKEN = res.token; start = Date.now(); path = []; setTimeout(send, WINDOW_MS); }
      })
      .catch(function () { window.location.reload(); });
  }
  setTimeout(send, WINDOW_MS);
})();
</script>
</body></html>
"""


def render_interstitial(token: str, capture_window_ms: int) -> str:
    return (
        INTERSTITIAL_TEMPLATE
        .replace("__TOKEN__", json.dumps(token))
        .replace("__VERIFY__", json.dumps(VERIFY_PATH))
        .replace("__WINDOW__", str(int(capture_window_ms)))
    )


def _gate_request(request: Request) -> GateRequest:
    return GateRequest(
        headers=dict(request.headers),
        client_ip=request.client.host if request.client else None,
        path=request.url.path,
        method=request.method,
    )


def _service(request: Request):
    return request.app.state.gate_service


def _redirect(outcome: GateOutcome) -> RedirectResponse:
    return RedirectResponse(outcome.redirect_url or "/", status_code=302, headers=NO_CACHE_HEADERS)


@router.get("/go")
async def go(request: Request):
    """
    Quick decision on request signals.

    Returns:
        302 to the target or block page, or an HTML interstitial that
        collects telemetry and posts it to /go/verify
    """
    service = _service(request)
    outcome = await service.evaluator.evaluate_quick(_gate_request(request))
    if outcome.is_interstitial:
        return HTMLResponse(
            render_interstitial(outcome.token, service.evaluator.config.capture_window_ms),
            headers=NO_CACHE_HEADERS,
        )
    return _redirect(outcome)


@router.post("/go/verify")
async def verify(request: Request) -> JSONResponse:
    """
    Full decision from interstitial telemetry.

    Body:
        {token, mousePath, dwellTimeMs, scrollEvents, clickEvents,
         keypressEvents, touchEvents, fingerprint}

    Returns:
        {"decision": "allow", "redirectUrl": "https://...", "score": 78}
    """
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Verify body is not JSON")
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    token = payload.get("token")
    fingerprint = payload.get("fingerprint")
    outcome = await _service(request).evaluator.evaluate_full(
        token if isinstance(token, str) else "",
        payload,
        fingerprint,
        _gate_request(request),
    )
    return JSONResponse(outcome.to_response(), headers=NO_CACHE_HEADERS)


@router.get("/health")
async def health(request: Request) -> Dict[str, Any]:
    return _service(request).get_status()
