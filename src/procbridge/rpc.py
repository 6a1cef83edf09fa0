from __future__ import annotations

import json
import os
import socket
import struct
import threading
from dataclasses import dataclass
from typing import Any, Optional

JsonObject = dict[str, Any]

# Largest number of descriptors accepted with one recvmsg; the service sends one per message.
MAX_FDS_PER_RECV = 4
RECV_SIZE = 65536


class JsonRpcError(RuntimeError):
    def __init__(self, *, error: Any) -> None:
        super().__init__(str(error))
        self.error = error


class JsonLineBuffer:
    """
    Incremental newline-delimited JSON buffer.

    Both directions of the service socket carry one JSON object per line.
    """

    def __init__(self) -> None:
        self._buf = bytearray()

    def feed(self, chunk: bytes) -> list[str]:
        self._buf += chunk
        out: list[str] = []
        while True:
            idx = self._buf.find(b"\n")
            if idx < 0:
                return out
            line = self._buf[:idx].decode("utf-8", "replace")
            del self._buf[: idx + 1]
            line = line.strip()
            if line:
                out.append(line)


@dataclass(frozen=True)
class JsonRpcIncoming:
    obj: JsonObject

    @property
    def id(self) -> Optional[int]:
        rid = self.obj.get("id")
        return rid if isinstance(rid, int) and not isinstance(rid, bool) else None

    @property
    def method(self) -> Optional[str]:
        m = self.obj.get("method")
        return m if isinstance(m, str) else None

    @property
    def params(self) -> JsonObject:
        p = self.obj.get("params")
        return p if isinstance(p, dict) else {}

    @property
    def is_response(self) -> bool:
        return self.id is not None and self.method is None

    @property
    def is_request(self) -> bool:
        return self.id is not None and self.method is not None

    @property
    def carries_pipe(self) -> bool:
        result = self.obj.get("result")
        return isinstance(result, dict) and isinstance(result.get("pipe"), str)


def parse_line(line: str) -> Optional[JsonRpcIncoming]:
    try:
        obj = json.loads(line)
    except ValueError:
        return None
    if not isinstance(obj, dict):
        return None
    return JsonRpcIncoming(obj=obj)


def encode(obj: JsonObject) -> bytes:
    return (json.dumps(obj, separators=(",", ":")) + "\n").encode("utf-8")


def request_obj(request_id: int, method: str, params: JsonObject) -> JsonObject:
    return {"id": request_id, "method": method, "params": params}


def result_obj(request_id: int, result: Any) -> JsonObject:
    return {"id": request_id, "result": result}


def error_obj(request_id: Optional[int], message: str) -> JsonObject:
    return {"id": request_id, "error": {"message": message}}


class MessageSocket:
    """
    Line-framed JSON over a connected Unix stream socket, with optional descriptor passing.

    Sends are serialized so that responses written from several threads never
    interleave. Descriptors received with `SCM_RIGHTS` are queued in arrival
    order; `take_fd()` hands them out to the messages that announced them.
    """

    def __init__(self, sock: socket.socket) -> None:
        self.sock = sock
        self._send_lock = threading.Lock()
        self._buf = JsonLineBuffer()
        self._fds: list[int] = []

    def send(self, obj: JsonObject, *, fd: Optional[int] = None) -> None:
        data = encode(obj)
        with self._send_lock:
            if fd is None:
                self.sock.sendall(data)
                return
            # The descriptor rides on the first byte; the rest may follow in plain sends.
            sent = socket.send_fds(self.sock, [data], [fd])
            if sent < len(data):
                self.sock.sendall(data[sent:])

    def recv(self) -> Optional[list[JsonRpcIncoming]]:
        """Block for more data; `None` at end of stream."""
        data, fds, _flags, _addr = socket.recv_fds(self.sock, RECV_SIZE, MAX_FDS_PER_RECV)
        for fd in fds:
            os.set_inheritable(fd, False)
        self._fds.extend(fds)
        if not data:
            return None
        out: list[JsonRpcIncoming] = []
        for line in self._buf.feed(data):
            incoming = parse_line(line)
            if incoming is not None:
                out.append(incoming)
        return out

    def take_fd(self) -> Optional[int]:
        if not self._fds:
            return None
        return self._fds.pop(0)

    def discard_fds(self) -> None:
        fds, self._fds = self._fds, []
        for fd in fds:
            try:
                os.close(fd)
            except OSError:
                pass

    def peer_uid(self) -> Optional[int]:
        """Peer uid via SO_PEERCRED (Linux); `None` where unavailable."""
        try:
            creds = self.sock.getsockopt(
                socket.SOL_SOCKET, socket.SO_PEERCRED, struct.calcsize("3i")
            )
        except (OSError, AttributeError):
            return None
        _pid, uid, _gid = struct.unpack("3i", creds)
        return uid

    def close(self) -> None:
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self.sock.close()
        except OSError:
            pass
        self.discard_fds()
