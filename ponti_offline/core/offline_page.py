"""Offline fallback page served when a navigation has no network and no cache.

The markup is self-contained: no external CSS or scripts.
"""

# Marker text clients and tests look for in the page
OFFLINE_PAGE_MARKER = "Sin Conexión"

OFFLINE_PAGE_HTML = """<!DOCTYPE html>
<html lang="es">
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <title>Ponti - Sin Conexión</title>
    <style>
        body {
            margin: 0;
            min-height: 100vh;
            display: flex;
            align-items: center;
            justify-content: center;
            font-family: system-ui, -apple-system, sans-serif;
            background: #f5f7fb;
            color: #1f2937;
            text-align: center;
        }
        main { padding: 2rem; max-width: 24rem; }
        h1 { font-size: 1.5rem; margin-bottom: 0.5rem; }
        p { color: #4b5563; line-height: 1.5; }
        button {
            margin-top: 1.5rem;
            padding: 0.75rem 1.5rem;
            border: none;
            border-radius: 0.75rem;
            background: #1d4ed8;
            color: white;
            font-size: 1rem;
            cursor: pointer;
        }
    </style>
</head>
<body>
    <main>
        <h1>Sin Conexión</h1>
        <p>Estás desconectado y esta página no está disponible sin conexión.
        Conéctate a internet para continuar.</p>
        <button type="button" onclick="window.location.reload()">Reintentar</button>
    </main>
</body>
</html>
"""
