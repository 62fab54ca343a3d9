from flask import Flask, jsonify, request
from services.background_guard import acquire_background_lock
from services.errors import GeositeError, public_error_message
from services.geosite_config import update_interval_seconds
from services.geosite_updater import start_geosite_updater
from services.pac_daemon import get_pac_daemon
import json
import logging
import os

logger = logging.getLogger(__name__)

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=(os.environ.get('LOG_LEVEL') or 'INFO').strip().upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

app = Flask(__name__)

PAC_MIMETYPE = 'application/x-ns-proxy-autoconfig'
DEFAULT_PAC_PROXY = 'SOCKS5 127.0.0.1:1080;SOCKS 127.0.0.1:1080;DIRECT;'


def _pac_proxy() -> str:
    return (os.environ.get('PAC_PROXY') or '').strip() or DEFAULT_PAC_PROXY


@app.route('/health', methods=['GET'])
def health():
    return jsonify({'ok': True})


@app.route('/proxy.pac', methods=['GET'])
def proxy_pac():
    try:
        content = get_pac_daemon().get_content()
    except Exception:
        logger.exception('Failed to load PAC file')
        return app.response_class('Failed to load PAC file.\n', status=500, mimetype='text/plain')
    # pac.txt keeps the placeholder; the proxy chain is a serving-time detail.
    content = content.replace('__PROXY__', json.dumps(_pac_proxy()))
    return app.response_class(content, mimetype=PAC_MIMETYPE)


@app.route('/wpad.dat', methods=['GET'])
def wpad_dat():
    # WPAD convention: clients request http://wpad.<domain>/wpad.dat
    resp = proxy_pac()
    resp.headers['Content-Disposition'] = 'inline; filename="wpad.dat"'
    return resp


@app.route('/api/geosite/groups', methods=['GET'])
def api_geosite_groups():
    source = get_pac_daemon().source
    source.reload_if_changed()
    return jsonify({
        'groups': sorted(source.index.groups()),
        'direct_groups': source.direct_groups,
        'proxied_groups': source.proxied_groups,
        'prefer_direct': source.prefer_direct,
    })


@app.route('/api/pac/route', methods=['GET'])
def api_pac_route():
    url = (request.args.get('url') or '').strip()
    if not url:
        return jsonify({'ok': False, 'error': 'url is required.'}), 400
    try:
        route = get_pac_daemon().route_for(url)
    except GeositeError as e:
        return jsonify({'ok': False, 'error': public_error_message(e)}), 400
    return jsonify({'ok': True, 'url': url, 'route': route})


@app.route('/api/geosite/update', methods=['POST'])
def api_geosite_update():
    daemon = get_pac_daemon()
    try:
        changed = daemon.update_pac_from_geosite()
    except Exception as e:
        logger.exception('Geosite update failed')
        return jsonify({'ok': False, 'status': 'failed', 'changed': False, 'error': public_error_message(e)}), 500

    result = daemon.last_update_result
    ok = bool(result is not None and result.ok)
    payload = {
        'ok': ok,
        'status': result.status if result is not None else 'failed',
        'changed': bool(changed),
        'error': '',
    }
    if result is not None and result.error is not None:
        payload['error'] = public_error_message(result.error)
    return jsonify(payload), (200 if ok else 502)


@app.route('/api/pac/regenerate', methods=['POST'])
def api_pac_regenerate():
    daemon = get_pac_daemon()
    body = request.get_json(silent=True) or {}
    try:
        for key in ('direct_groups', 'proxied_groups'):
            v = body.get(key)
            if v is not None and not (isinstance(v, list) and all(isinstance(x, str) for x in v)):
                raise ValueError(f'{key} must be a list of strings.')
        prefer_direct = body.get('prefer_direct')
        if prefer_direct is not None and not isinstance(prefer_direct, bool):
            raise ValueError('prefer_direct must be true or false.')
        changed = daemon.merge_and_write(
            body.get('direct_groups'),
            body.get('proxied_groups'),
            prefer_direct,
        )
    except (GeositeError, ValueError) as e:
        return jsonify({'ok': False, 'changed': False, 'error': public_error_message(e)}), 400
    except Exception as e:
        logger.exception('PAC regeneration failed')
        return jsonify({'ok': False, 'changed': False, 'error': public_error_message(e)}), 500
    return jsonify({'ok': True, 'changed': bool(changed), 'error': ''})


_disable_background = (os.environ.get('DISABLE_BACKGROUND') or '').strip() == '1'

# In multi-worker servers, ensure only one process runs background workers.
if not _disable_background:
    try:
        if not acquire_background_lock():
            _disable_background = True
    except Exception:
        logger.exception('Background lock check failed; starting background workers anyway')

if not _disable_background:
    # Watch pac.txt and user-rule.txt for external edits (best-effort).
    try:
        get_pac_daemon().start_watching()
    except Exception:
        logger.exception('Failed to start PAC file watchers')

    # Periodic geosite refresh (best-effort).
    try:
        start_geosite_updater(get_pac_daemon(), interval_seconds=update_interval_seconds())
    except Exception:
        logger.exception('Failed to start geosite updater')
