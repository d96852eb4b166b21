from aiohttp import web
import logging
from stats_manager import StatsManager

logger = logging.getLogger(__name__)

# ==========================================
# NODE DASHBOARD (stream + bootstrap counters)
# ==========================================
DASHBOARD_HTML = """
<!DOCTYPE html>
<html>
<head>
    <title>Peer Stream Node</title>
    <style>
        body { background-color: #1e1e1e; color: #00ff00; font-family: monospace; padding: 20px; }
        .card { border: 1px solid #333; padding: 15px; margin-bottom: 20px; border-radius: 5px; background: #252526; }
        h1, h2 { color: #00ff00; text-shadow: 0 0 5px #00ff00; }
        .stat-value { font-size: 1.5em; font-weight: bold; }
        table { border-collapse: collapse; }
        td { padding: 4px 12px; border-bottom: 1px solid #333; }
    </style>
</head>
<body>
    <h1>Peer Stream Node (<span id="role">-</span>)</h1>

    <div class="card">
        <h2>Link</h2>
        <div>Peer: <span id="active_peer" class="stat-value">-</span></div>
        <div>Bootstrap: <span id="bootstrap_state" class="stat-value">-</span></div>
        <div>Uptime: <span id="uptime">0</span> s</div>
        <div>Upload Rate: <span id="upload_rate">0</span> KB/s</div>
        <div>Download Rate: <span id="download_rate">0</span> KB/s</div>
    </div>

    <div class="card">
        <h2>Events</h2>
        <table id="counters"></table>
    </div>

    <script>
        async function refresh() {
            const res = await fetch('/api/stats');
            const s = await res.json();
            document.getElementById('role').textContent = s.role;
            document.getElementById('active_peer').textContent = s.active_peer || 'none';
            document.getElementById('bootstrap_state').textContent = s.bootstrap_state;
            document.getElementById('uptime').textContent = s.uptime;
            document.getElementById('upload_rate').textContent = (s.upload_rate / 1024).toFixed(1);
            document.getElementById('download_rate').textContent = (s.download_rate / 1024).toFixed(1);
            const rows = Object.entries(s.counters).sort()
                .map(([k, v]) => `<tr><td>${k}</td><td>${v}</td></tr>`).join('');
            document.getElementById('counters').innerHTML = rows;
        }
        setInterval(refresh, 1000);
        refresh();
    </script>
</body>
</html>
"""

async def handle_index(request):
    return web.Response(text=DASHBOARD_HTML, content_type='text/html')

async def handle_stats(request):
    stats = StatsManager().get_stats()
    return web.json_response(stats)

def create_app() -> web.Application:
    app = web.Application()
    app.router.add_get('/', handle_index)
    app.router.add_get('/api/stats', handle_stats)
    return app

async def start_dashboard(port=8888, host='0.0.0.0'):
    runner = web.AppRunner(create_app())
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"Dashboard started at http://localhost:{port}")
    return runner
