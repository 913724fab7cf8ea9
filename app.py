# app.py
# Entry point: runs the battlemap host/observer sync server

import sys
import time
import threading
import webbrowser

from battlemap import config, create_app, socketio

app = create_app()


# --- Main Execution ---
if __name__ == '__main__':
    is_frozen = getattr(sys, 'frozen', False)
    port = app.config['PORT']
    lan_ip = config.get_lan_ip()
    if not is_frozen:
        with app.app_context(): print("--- Registered URL Routes ---\n", app.url_map, "\n-----------------------------")
    print("------------------------------------------")
    print(" Starting battlemap sync server... ")
    print(f" Storing uploads in:  {app.config['UPLOADS_FOLDER']}")
    print(f" Adventure database:  {app.config['ADVENTURES_DB_PATH']}")
    print(f" New maps start:      {app.config['DEFAULT_FOG_POLICY']}")
    print("------------------------------------------")
    print(f" Your LAN IP: {lan_ip}")
    print("------------------------------------------")
    print(f" Host (this machine): http://127.0.0.1:{port}/")
    print(f" Observers (LAN):     http://{lan_ip}:{port}/api/sessions/<session-id>/observer-frame")
    print("------------------------------------------")
    if is_frozen:
        print(" (Close this window to stop the server)")
        print("------------------------------------------")

    # Auto-open browser after a short delay to let the server start
    def open_browser():
        time.sleep(1.5)
        webbrowser.open(f"http://127.0.0.1:{port}/api/info")
    threading.Thread(target=open_browser, daemon=True).start()

    socketio.run(app, debug=not is_frozen, host='0.0.0.0', port=port, use_reloader=not is_frozen, allow_unsafe_werkzeug=True)
