import json


def build_collector_script(
    secret: str,
    kdf_iterations: int,
    default_check_endpoint: str = "/rate-limit/check",
    default_record_endpoint: str = "/rate-limit/record",
) -> str:
    """Browser collector: probes signals, composes the identity, seals requests.

    Canonicalization and envelope layout mirror ``services.identity`` and
    ``services.envelope`` exactly.
    """
    secret_literal = json.dumps(secret)
    return f"""(function(global) {{
  const COMPONENT_ORDER = ['hardware', 'canvas', 'webgl', 'audio', 'fonts', 'timezone', 'storage'];
  const GROUP_FIELDS = {{
    hardware: ['platform', 'hardware_concurrency', 'device_memory', 'screen_width',
               'screen_height', 'color_depth', 'pixel_ratio', 'max_touch_points'],
    canvas: ['render_hash'],
    webgl: ['vendor', 'renderer'],
    audio: ['render_hash'],
    fonts: ['detected'],
    timezone: ['name', 'utc_offset_minutes'],
    storage: ['local_storage', 'session_storage', 'indexed_db', 'persisted',
              'quota_bucket_mb', 'private_mode']
  }};
  const UNAVAILABLE = 'unavailable';
  const SECRET = {secret_literal};
  const KDF_ITERATIONS = {int(kdf_iterations)};
  const PROBE_FONTS = [
    'Arial', 'Calibri', 'Cambria', 'Comic Sans MS', 'Consolas', 'Courier New',
    'DejaVu Sans', 'Georgia', 'Helvetica', 'Liberation Sans', 'Menlo', 'Monaco',
    'Noto Sans', 'Roboto', 'Segoe UI', 'Tahoma', 'Times New Roman', 'Ubuntu',
    'Verdana'
  ];
  const encoder = new TextEncoder();

  function toHex(buffer) {{
    return Array.from(new Uint8Array(buffer))
      .map((b) => b.toString(16).padStart(2, '0'))
      .join('');
  }}

  function toBase64(bytes) {{
    let binary = '';
    const view = new Uint8Array(bytes);
    for (let i = 0; i < view.length; i++) binary += String.fromCharCode(view[i]);
    return btoa(binary);
  }}

  function toBase64Url(bytes) {{
    return toBase64(bytes).replace(/\\+/g, '-').replace(/\\//g, '_').replace(/=+$/, '');
  }}

  async function sha256Hex(text) {{
    return toHex(await crypto.subtle.digest('SHA-256', encoder.encode(text)));
  }}

  async function postJson(endpoint, body) {{
    const response = await fetch(endpoint, {{
      method: 'POST',
      headers: {{ 'Content-Type': 'application/json' }},
      body: JSON.stringify(body)
    }});

    // A blocked verdict is a 403 with a verdict body.
    if (!response.ok && response.status !== 403) {{
      const text = await response.text();
      throw new Error('Request failed: ' + response.status + ' ' + text);
    }}

    return response.json();
  }}

  function getHardwareInfo() {{
    try {{
      return {{
        platform: navigator.platform || null,
        hardware_concurrency: navigator.hardwareConcurrency || null,
        device_memory: navigator.deviceMemory || null,
        screen_width: screen.width || null,
        screen_height: screen.height || null,
        color_depth: screen.colorDepth || null,
        pixel_ratio: global.devicePixelRatio || null,
        max_touch_points: typeof navigator.maxTouchPoints === 'number' ? navigator.maxTouchPoints : null
      }};
    }} catch (_) {{
      return null;
    }}
  }}

  async function getCanvasInfo() {{
    try {{
      const canvas = document.createElement('canvas');
      canvas.width = 240;
      canvas.height = 60;
      const ctx = canvas.getContext('2d');
      if (!ctx) return null;
      ctx.textBaseline = 'top';
      ctx.font = '16px "Arial"';
      ctx.fillStyle = '#f60';
      ctx.fillRect(100, 1, 62, 20);
      ctx.fillStyle = '#069';
      ctx.fillText('download-guard \\u{{1F512}}', 2, 15);
      ctx.fillStyle = 'rgba(102, 204, 0, 0.7)';
      ctx.fillText('download-guard \\u{{1F512}}', 4, 17);
      return {{ render_hash: await sha256Hex(canvas.toDataURL()) }};
    }} catch (_) {{
      return null;
    }}
  }}

  function getWebGLInfo() {{
    try {{
      const canvas = document.createElement('canvas');
      const gl = canvas.getContext('webgl') || canvas.getContext('experimental-webgl');
      if (!gl) return null;
      const dbg = gl.getExtension('WEBGL_debug_renderer_info');
      return {{
        vendor: dbg ? gl.getParameter(dbg.UNMASKED_VENDOR_WEBGL) : gl.getParameter(gl.VENDOR),
        renderer: dbg ? gl.getParameter(dbg.UNMASKED_RENDERER_WEBGL) : gl.getParameter(gl.RENDERER)
      }};
    }} catch (_) {{
      return null;
    }}
  }}

  async function getAudioInfo() {{
    try {{
      const Ctx = global.OfflineAudioContext || global.webkitOfflineAudioContext;
      if (!Ctx) return null;
      const ctx = new Ctx(1, 5000, 44100);
      const oscillator = ctx.createOscillator();
      oscillator.type = 'triangle';
      oscillator.frequency.value = 10000;
      const compressor = ctx.createDynamicsCompressor();
      compressor.threshold.value = -50;
      compressor.knee.value = 40;
      compressor.ratio.value = 12;
      compressor.attack.value = 0;
      compressor.release.value = 0.25;
      oscillator.connect(compressor);
      compressor.connect(ctx.destination);
      oscillator.start(0);
      const buffer = await ctx.startRendering();
      const samples = buffer.getChannelData(0);
      let sum = 0;
      for (let i = 4500; i < samples.length; i++) sum += Math.abs(samples[i]);
      return {{ render_hash: await sha256Hex(sum.toString()) }};
    }} catch (_) {{
      return null;
    }}
  }}

  function getFontInfo() {{
    try {{
      const canvas = document.createElement('canvas');
      const ctx = canvas.getContext('2d');
      if (!ctx) return null;
      const sample = 'mmmmmmmmmmlli10OO';
      const bases = ['monospace', 'sans-serif', 'serif'];
      const baseWidths = bases.map((base) => {{
        ctx.font = '72px ' + base;
        return ctx.measureText(sample).width;
      }});
      const detected = PROBE_FONTS.filter((font) => bases.some((base, i) => {{
        ctx.font = '72px "' + font + '", ' + base;
        return ctx.measureText(sample).width !== baseWidths[i];
      }}));
      return {{ detected }};
    }} catch (_) {{
      return null;
    }}
  }}

  function getTimezoneInfo() {{
    try {{
      return {{
        name: Intl.DateTimeFormat().resolvedOptions().timeZone || null,
        utc_offset_minutes: -new Date().getTimezoneOffset()
      }};
    }} catch (_) {{
      return null;
    }}
  }}

  function probeStorage(name) {{
    try {{
      const store = global[name];
      if (!store) return false;
      const key = '__dg_probe__';
      store.setItem(key, '1');
      store.removeItem(key);
      return true;
    }} catch (_) {{
      return false;
    }}
  }}

  async function getStorageInfo() {{
    try {{
      let persisted = null;
      let quotaBucketMb = null;
      let privateMode = null;
      if (navigator.storage) {{
        if (navigator.storage.persisted) persisted = await navigator.storage.persisted();
        if (navigator.storage.estimate) {{
          const estimate = await navigator.storage.estimate();
          if (typeof estimate.quota === 'number') {{
            const quotaMb = estimate.quota / (1024 * 1024);
            quotaBucketMb = Math.floor(quotaMb / 1024) * 1024;
            privateMode = quotaMb < 120;
          }}
        }}
      }}
      return {{
        local_storage: probeStorage('localStorage'),
        session_storage: probeStorage('sessionStorage'),
        indexed_db: !!global.indexedDB,
        persisted,
        quota_bucket_mb: quotaBucketMb,
        private_mode: privateMode
      }};
    }} catch (_) {{
      return null;
    }}
  }}

  async function collectSignals() {{
    const [canvas, audio, storage] = await Promise.all([
      getCanvasInfo(),
      getAudioInfo(),
      getStorageInfo()
    ]);
    return {{
      hardware: getHardwareInfo(),
      canvas,
      webgl: getWebGLInfo(),
      audio,
      fonts: getFontInfo(),
      timezone: getTimezoneInfo(),
      storage
    }};
  }}

  function renderValue(value) {{
    if (value === null || value === undefined) return '';
    if (typeof value === 'boolean') return value ? 'true' : 'false';
    if (typeof value === 'number') return Number.isInteger(value) ? String(Math.trunc(value)) : String(value);
    if (Array.isArray(value)) {{
      return Array.from(new Set(value.map(renderValue))).sort().join(',');
    }}
    return String(value).trim();
  }}

  function canonicalGroup(name, group) {{
    if (!group) return UNAVAILABLE;
    return GROUP_FIELDS[name].map((field) => renderValue(group[field])).join('|');
  }}

  async function compose(signals) {{
    const components = {{}};
    for (const name of COMPONENT_ORDER) {{
      components[name] = await sha256Hex(canonicalGroup(name, signals && signals[name]));
    }}
    const primaryHash = await sha256Hex(COMPONENT_ORDER.map((name) => components[name]).join('|'));
    return {{ primary_hash: primaryHash, components }};
  }}

  async function seal(payload) {{
    const salt = crypto.getRandomValues(new Uint8Array(16));
    const iv = crypto.getRandomValues(new Uint8Array(12));
    const nonce = toBase64Url(crypto.getRandomValues(new Uint8Array(16)));
    const timestamp = Date.now();

    const baseKey = await crypto.subtle.importKey(
      'raw', encoder.encode(SECRET), 'PBKDF2', false, ['deriveKey']
    );
    const key = await crypto.subtle.deriveKey(
      {{ name: 'PBKDF2', salt, iterations: KDF_ITERATIONS, hash: 'SHA-256' }},
      baseKey,
      {{ name: 'AES-GCM', length: 256 }},
      false,
      ['encrypt']
    );
    const ciphertext = await crypto.subtle.encrypt(
      {{ name: 'AES-GCM', iv, additionalData: encoder.encode(timestamp + ':' + nonce) }},
      key,
      encoder.encode(JSON.stringify(payload))
    );
    return {{
      ciphertext: toBase64(ciphertext),
      iv: toBase64(iv),
      salt: toBase64(salt),
      nonce,
      timestamp
    }};
  }}

  async function check(params) {{
    const endpoint = (params && params.checkEndpoint) || '{default_check_endpoint}';
    const identity = (params && params.identity) || await compose(await collectSignals());
    return await postJson(endpoint, await seal({{
      identity: identity.primary_hash,
      components: identity.components
    }}));
  }}

  async function record(params) {{
    const endpoint = (params && params.recordEndpoint) || '{default_record_endpoint}';
    const identity = (params && params.identity) || await compose(await collectSignals());
    const elapsed = params && typeof params.elapsedSincePageLoadMs === 'number'
      ? params.elapsedSincePageLoadMs
      : Math.round(performance.now());
    return await postJson(endpoint, await seal({{
      identity: identity.primary_hash,
      components: identity.components,
      elapsedSincePageLoadMs: elapsed
    }}));
  }}

  global.DownloadGuard = {{
    collectSignals,
    compose,
    seal,
    check,
    record
  }};
}})(window);
"""


__all__ = ("build_collector_script",)
