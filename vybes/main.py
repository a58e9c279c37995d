from __future__ import annotations

import os
import socket
import webbrowser

import uvicorn


def _find_port(start: int = 8383, end: int = 8433, host: str = "127.0.0.1") -> int:
    for port in range(start, end + 1):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((host, port))
            except OSError:
                continue
            return port
    raise RuntimeError("no_available_port")


def resolve_bind() -> tuple[str, int]:
    host = (os.getenv("VYBES_HOST") or "0.0.0.0").strip()
    raw_port = (os.getenv("VYBES_PORT") or "").strip()
    if raw_port:
        return host, int(raw_port)
    return host, _find_port(host="127.0.0.1" if host == "0.0.0.0" else host)


def main() -> None:
    host, port = resolve_bind()
    url = f"http://{'127.0.0.1' if host == '0.0.0.0' else host}:{port}/"
    print(f"Vybes mock server running at {url}")
    print(f"Live updates at ws://{url.split('://', 1)[1]}live-updates")
    print('Add "127.0.0.1 vybes.local" to your hosts file to match the device hostname')

    from vybes.server import app

    if os.getenv("VYBES_OPEN_BROWSER") == "1":
        webbrowser.open(url)
    uvicorn.run(app, host=host, port=port, log_level="info", access_log=False)


if __name__ == "__main__":
    main()
