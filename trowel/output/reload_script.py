"""Client side of the live-reload channel, injected into served pages."""

RELOAD_WS_PATH = "/_trowel/ws"

_CLIENT_TEMPLATE = """(function () {
  var url = (location.protocol === "https:" ? "wss://" : "ws://") + location.host + "%(path)s";
  function connect() {
    var ws = new WebSocket(url);
    ws.onmessage = function (event) {
      var msg = JSON.parse(event.data);
      if (msg.type === "reload") {
        window.location.reload();
      } else if (msg.type === "error") {
        console.error("[trowel] build failed\\n" + msg.message);
      }
    };
    ws.onclose = function () { setTimeout(connect, 1000); };
  }
  connect();
})();"""


def reload_client_script(path: str = RELOAD_WS_PATH) -> str:
    return _CLIENT_TEMPLATE % {"path": path}
