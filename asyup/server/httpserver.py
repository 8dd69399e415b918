import asyncio
import logging
import datetime
import email.utils
import http
import socket
from itertools import count

import h11

from asyup._version import __version__
from asyup.common.connection import Connection

logger = logging.getLogger('asyup.http')


class ResponseAborted(Exception):
	"""The response was already on the wire when it failed, the connection can only be dropped"""
	pass


def get_header(headers, name:bytes):
	"""Value of the first header called name (lowercase bytes) as str, or None"""
	for hname, value in headers:
		if hname.lower() == name:
			return value.decode('latin-1')
	return None

def format_date_time(dt=None):
	"""Generate a RFC 7231 / RFC 9110 IMF-fixdate string"""
	if dt is None:
		dt = datetime.datetime.now(datetime.timezone.utc)
	return email.utils.format_datetime(dt, usegmt=True)

SERVER_IDENT = " ".join(
	["asyup/%s" % __version__, h11.PRODUCT_ID]
).encode("ascii")


class HTTPWrapper:
	_next_id = count()

	def __init__(self, connection:Connection):
		self.stream = connection
		self.conn = h11.Connection(h11.SERVER)
		self.ident = SERVER_IDENT
		# unique id to tell simultaneous clients apart in the debug output
		self.client_id = next(HTTPWrapper._next_id)

	async def send(self, event):
		# ConnectionClosed is never sent by the handlers, so data can't be None here
		assert type(event) is not h11.ConnectionClosed
		data = self.conn.send(event)
		try:
			await self.stream.write(data)
		except BaseException:
			self.conn.send_failed()
			raise

	async def _read_from_peer(self):
		if self.conn.they_are_waiting_for_100_continue:
			logger.debug('[%s] Sending 100 Continue' % self.client_id)
			go_ahead = h11.InformationalResponse(
				status_code=100, headers=self.basic_headers()
			)
			await self.send(go_ahead)
		try:
			data = await self.stream.read_one()
		except (ConnectionError, OSError) as exc:
			logger.debug('[%s] Error reading from peer: %s' % (self.client_id, exc))
			# They've stopped listening. Not much we can do about it here.
			data = b""
		self.conn.receive_data(data)

	async def next_event(self):
		while True:
			event = self.conn.next_event()
			if event is h11.NEED_DATA:
				await self._read_from_peer()
				continue
			return event

	async def shutdown_and_clean_up(self):
		await self.stream.close()

	def basic_headers(self):
		# HTTP requires these headers in all responses
		return [
			("Date", format_date_time().encode("ascii")),
			("Server", self.ident),
		]


class HTTPServerHandler:
	"""
	Dispatches every request to the do_<METHOD> coroutine of the subclass.
	Methods without one are answered with 405.
	One instance serves all requests of a single connection.
	"""
	def __init__(self):
		self._wrapper:HTTPWrapper = None

	def basic_headers(self):
		return self._wrapper.basic_headers()

	def get_allowed_methods(self):
		return sorted([name[3:] for name in dir(self) if name.startswith('do_')])

	async def _process_request(self, wrapper, request:h11.Request):
		self._wrapper = wrapper
		method = request.method.decode("ascii")
		func = getattr(self, "do_%s" % method, None)
		if func is None:
			return await self.send_method_not_allowed()
		await func(request)

	async def read_body(self):
		"""Yields the request body chunk by chunk"""
		while True:
			event = await self._wrapper.next_event()
			if isinstance(event, h11.Data):
				yield event.data
			elif isinstance(event, h11.EndOfMessage):
				return
			else:
				raise ConnectionError('Connection closed while reading request body')

	async def send_response(self, status_code:int, body:bytes = b'', content_type:str = 'text/plain; charset=utf-8', headers = None):
		response_headers = self.basic_headers()
		if headers is not None:
			response_headers.extend(headers)
		if body is not None:
			response_headers.append(("Content-Type", content_type.encode('ascii')))
		else:
			body = b''
		response_headers.append(("Content-Length", str(len(body)).encode('ascii')))
		await self._wrapper.send(h11.Response(status_code=status_code, headers=response_headers))
		if len(body) > 0:
			await self._wrapper.send(h11.Data(data=body))
		await self._wrapper.send(h11.EndOfMessage())

	async def send_error(self, status_code:int, message:str):
		body = (message + '\n').encode('utf-8', errors='surrogateescape')
		await self.send_response(
			status_code,
			body,
			headers = [("X-Content-Type-Options", b"nosniff")]
		)

	async def send_method_not_allowed(self):
		await self.send_response(
			405,
			b'Method Not Allowed\n',
			headers = [("Allow", ', '.join(self.get_allowed_methods()).encode('ascii'))]
		)

	async def send_redirect(self, location:str, status_code:int = 302):
		body = '<a href="%s">%s</a>.\n' % (location.replace('"', '%22'), http.HTTPStatus(status_code).phrase)
		await self.send_response(
			status_code,
			body.encode('utf-8'),
			content_type = 'text/html; charset=utf-8',
			headers = [("Location", location.encode('latin-1'))]
		)


class HTTPServer:
	def __init__(self, client_handler, host:str = '0.0.0.0', port:int = 4000, sock:socket.socket = None):
		self.client_handler = client_handler
		self.host = host
		self.port = port
		self.sock = sock
		self.server = None
		self.connections = []

	async def __aenter__(self):
		await self.start()
		return self

	async def __aexit__(self, exc_type, exc, tb):
		await self.terminate()

	def get_port(self):
		return self.server.sockets[0].getsockname()[1]

	async def start(self):
		if self.sock is not None:
			self.server = await asyncio.start_server(self.__accept, sock=self.sock)
		else:
			self.server = await asyncio.start_server(self.__accept, self.host, self.port)
		logger.info('Listening on %s' % ', '.join(str(s.getsockname()) for s in self.server.sockets))
		return self.server

	async def serve(self):
		if self.server is None:
			await self.start()
		async with self.server:
			await self.server.serve_forever()

	async def terminate(self):
		if self.server is not None:
			self.server.close()
		for connection in self.connections:
			await connection.close()
		self.connections = []
		if self.server is not None:
			await self.server.wait_closed()
			self.server = None

	async def __accept(self, reader, writer):
		connection = Connection(reader, writer)
		self.connections.append(connection)
		try:
			await self.handle_connection(connection)
		finally:
			self.connections.remove(connection)
			await connection.close()

	async def __send_bad_request(self, wrapper:HTTPWrapper, exc:h11.RemoteProtocolError):
		if wrapper.conn.our_state not in (h11.IDLE, h11.SEND_RESPONSE):
			return
		body = ('%s\n' % exc).encode('utf-8')
		headers = wrapper.basic_headers()
		headers.extend([
			("Content-Type", b"text/plain; charset=utf-8"),
			("Content-Length", str(len(body)).encode('ascii')),
			("Connection", b"close"),
		])
		try:
			await wrapper.send(h11.Response(status_code=exc.error_status_hint, headers=headers))
			await wrapper.send(h11.Data(data=body))
			await wrapper.send(h11.EndOfMessage())
		except Exception as e:
			logger.debug('[%s] Failed to send error response: %s' % (wrapper.client_id, e))

	async def handle_connection(self, connection:Connection):
		wrapper = HTTPWrapper(connection)
		handler = self.client_handler()
		logger.debug('[%s] New client connected from %s' % (wrapper.client_id, connection.get_peer_name()))
		while True:
			try:
				event = await wrapper.next_event()
			except h11.RemoteProtocolError as exc:
				logger.debug('[%s] Bad request: %s' % (wrapper.client_id, exc))
				await self.__send_bad_request(wrapper, exc)
				break

			if type(event) is h11.ConnectionClosed:
				break
			if type(event) is not h11.Request:
				logger.debug('[%s] Unexpected event %s' % (wrapper.client_id, type(event)))
				break

			try:
				await handler._process_request(wrapper, event)
			except Exception as exc:
				logger.debug('[%s] Error in request handler: %r' % (wrapper.client_id, exc))
				break

			try:
				# drain whatever body the handler did not consume
				while wrapper.conn.their_state is h11.SEND_BODY:
					event = await wrapper.next_event()
					if type(event) is h11.ConnectionClosed:
						break
			except h11.RemoteProtocolError as exc:
				logger.debug('[%s] Bad request body: %s' % (wrapper.client_id, exc))
				break

			if wrapper.conn.states == {h11.CLIENT: h11.DONE, h11.SERVER: h11.DONE}:
				wrapper.conn.start_next_cycle()
				continue
			break
		logger.debug('[%s] Client disconnected' % wrapper.client_id)
