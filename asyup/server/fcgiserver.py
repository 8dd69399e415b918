import socket
import asyncio
import logging
import http
import urllib.parse
from typing import Dict

import h11

from asyup.common.connection import Connection
from asyup.server.httpserver import SERVER_IDENT, format_date_time
from asyup.protocol.fastcgi import FCGIRecord, FCGIRecordType, FCGIRole, \
	FCGIProtocolStatus, FCGIBeginRequestBody, FCGIEndRequestBody, FCGIUnknownTypeBody, \
	FCGIProtocolError, FCGI_NULL_REQUEST_ID, encode_params, decode_params, stream_records

logger = logging.getLogger('asyup.fcgi')

# headers the front end web server deals with, never passed on to the handler
_skip_http_params = ['HTTP_CONTENT_LENGTH', 'HTTP_CONTENT_TYPE', 'HTTP_TRANSFER_ENCODING', 'HTTP_CONNECTION', 'HTTP_PROXY']

def build_request(params:Dict[str, str]) -> h11.Request:
	"""Rebuilds the client's HTTP request from the CGI environment of a FastCGI request"""
	method = params.get('REQUEST_METHOD', 'GET') or 'GET'
	target = params.get('REQUEST_URI', '')
	if target == '':
		# PATH_INFO arrives decoded, the handler expects a percent-encoded target
		path = params.get('SCRIPT_NAME', '') + params.get('PATH_INFO', '')
		target = urllib.parse.quote(path, safe='/', encoding='latin-1')
		if params.get('QUERY_STRING', '') != '':
			target += '?' + params['QUERY_STRING']
	if target == '':
		target = '/'

	headers = []
	for name, value in params.items():
		if name.startswith('HTTP_') and name not in _skip_http_params:
			headers.append((name[5:].replace('_', '-').lower(), value))
	if 'HTTP_HOST' not in params:
		headers.append(('host', params.get('SERVER_NAME', 'localhost') or 'localhost'))
	if params.get('CONTENT_TYPE', '') != '':
		headers.append(('content-type', params['CONTENT_TYPE']))
	if params.get('CONTENT_LENGTH', '') != '':
		headers.append(('content-length', params['CONTENT_LENGTH']))

	return h11.Request(
		method = method.encode('latin-1'),
		target = target.encode('latin-1'),
		headers = [(k.encode('latin-1'), v.encode('latin-1')) for k, v in headers],
		http_version = '1.1',
	)


class FCGIRequest:
	def __init__(self, request_id:int, keep_conn:bool):
		self.request_id = request_id
		self.keep_conn = keep_conn
		self.params_data = b''
		self.stdin = asyncio.Queue()
		self.task = None
		self.ended = False


class FCGIWrapper:
	"""
	Stands in for the HTTP wrapper when running behind a FastCGI front end.
	Accepts the same h11 response events and turns them into a CGI style
	response on FCGI_STDOUT; the request body arrives from FCGI_STDIN.
	"""
	def __init__(self, fconn, request:FCGIRequest):
		self.fconn = fconn
		self.request = request
		self.client_id = '%s/%s' % (fconn.client_id, request.request_id)
		self.response_started = False

	def basic_headers(self):
		return [
			("Date", format_date_time().encode("ascii")),
			("Server", SERVER_IDENT),
		]

	async def send(self, event):
		if isinstance(event, h11.InformationalResponse):
			return
		if isinstance(event, h11.Response):
			reason = event.reason.decode('latin-1')
			if reason == '':
				try:
					reason = http.HTTPStatus(event.status_code).phrase
				except ValueError:
					reason = 'Unknown'
			head = 'Status: %d %s\r\n' % (event.status_code, reason)
			for name, value in event.headers:
				head += '%s: %s\r\n' % (name.decode('latin-1'), value.decode('latin-1'))
			head += '\r\n'
			self.response_started = True
			await self.fconn.write_stream(FCGIRecordType.STDOUT, self.request, head.encode('latin-1'))
		elif isinstance(event, h11.Data):
			await self.fconn.write_stream(FCGIRecordType.STDOUT, self.request, bytes(event.data))
		elif isinstance(event, h11.EndOfMessage):
			await self.fconn.end_request(self.request)
		else:
			raise ValueError('Unexpected event %s' % type(event))

	async def next_event(self):
		return await self.request.stdin.get()


class FCGIConnection:
	def __init__(self, server, connection:Connection, client_id:int):
		self.server = server
		self.connection = connection
		self.client_id = client_id
		self.requests:Dict[int, FCGIRequest] = {}
		# multiplexed requests write from their own tasks
		self.write_lock = asyncio.Lock()

	async def write(self, data:bytes):
		async with self.write_lock:
			await self.connection.write(data)

	async def write_record(self, rtype:FCGIRecordType, request_id:int, content:bytes = b''):
		await self.write(FCGIRecord(rtype, request_id, content).to_bytes())

	async def write_stream(self, rtype:FCGIRecordType, request:FCGIRequest, data:bytes):
		if request.ended is True or len(data) == 0:
			return
		await self.write(stream_records(rtype, request.request_id, data))

	async def end_request(self, request:FCGIRequest, protocol_status:FCGIProtocolStatus = FCGIProtocolStatus.REQUEST_COMPLETE, app_status:int = 0):
		if request.ended is True:
			return
		request.ended = True
		self.requests.pop(request.request_id, None)
		data = b''
		if protocol_status == FCGIProtocolStatus.REQUEST_COMPLETE:
			data += FCGIRecord(FCGIRecordType.STDOUT, request.request_id).to_bytes()
		data += FCGIRecord(
			FCGIRecordType.END_REQUEST,
			request.request_id,
			FCGIEndRequestBody(app_status, protocol_status).to_bytes()
		).to_bytes()
		try:
			await self.write(data)
		finally:
			if request.keep_conn is False:
				await self.connection.close()

	async def __run_request(self, request:FCGIRequest, params:Dict[str, str]):
		wrapper = FCGIWrapper(self, request)
		try:
			try:
				event = build_request(params)
			except (h11.LocalProtocolError, ValueError) as e:
				logger.debug('[%s] Invalid request parameters: %s' % (wrapper.client_id, e))
				await wrapper.send(h11.Response(status_code=400, headers=wrapper.basic_headers()))
				await wrapper.send(h11.Data(data=('%s\n' % e).encode('utf-8')))
				return
			logger.debug('[%s] %s %s' % (wrapper.client_id, event.method.decode(), event.target.decode('latin-1')))
			handler = self.server.client_handler()
			await handler._process_request(wrapper, event)
		except asyncio.CancelledError:
			raise
		except Exception as e:
			logger.debug('[%s] Error in request handler: %r' % (wrapper.client_id, e))
			if wrapper.response_started is False:
				await self.end_request(request, app_status=1)
		finally:
			if request.ended is False and self.connection.closing is False:
				await self.end_request(request)

	async def __handle_management(self, record:FCGIRecord):
		if record.TYPE == FCGIRecordType.GET_VALUES:
			known = {
				'FCGI_MAX_CONNS' : str(self.server.max_conns),
				'FCGI_MAX_REQS' : str(self.server.max_reqs),
				'FCGI_MPXS_CONNS' : '1',
			}
			result = {}
			for name in decode_params(record.CONTENT):
				if name in known:
					result[name] = known[name]
			await self.write_record(FCGIRecordType.GET_VALUES_RESULT, FCGI_NULL_REQUEST_ID, encode_params(result))
		else:
			await self.write_record(FCGIRecordType.UNKNOWN_TYPE, FCGI_NULL_REQUEST_ID, FCGIUnknownTypeBody(record.get_type_value()).to_bytes())

	async def __handle_record(self, record:FCGIRecord):
		if record.REQUEST_ID == FCGI_NULL_REQUEST_ID:
			return await self.__handle_management(record)

		if record.TYPE == FCGIRecordType.BEGIN_REQUEST:
			body = FCGIBeginRequestBody.from_bytes(record.CONTENT)
			request = FCGIRequest(record.REQUEST_ID, body.keep_conn)
			if body.ROLE != FCGIRole.RESPONDER:
				return await self.end_request(request, FCGIProtocolStatus.UNKNOWN_ROLE)
			self.requests[record.REQUEST_ID] = request
			return

		request = self.requests.get(record.REQUEST_ID)
		if request is None:
			# not an active request, ignored
			return

		if record.TYPE == FCGIRecordType.PARAMS:
			if len(record.CONTENT) > 0:
				request.params_data += record.CONTENT
				return
			if request.task is None:
				params = decode_params(request.params_data)
				request.params_data = b''
				request.task = asyncio.create_task(self.__run_request(request, params))

		elif record.TYPE == FCGIRecordType.STDIN:
			if len(record.CONTENT) > 0:
				await request.stdin.put(h11.Data(data=record.CONTENT))
			else:
				await request.stdin.put(h11.EndOfMessage())

		elif record.TYPE == FCGIRecordType.ABORT_REQUEST:
			if request.task is not None:
				request.task.cancel()
			await self.end_request(request)

		elif record.TYPE == FCGIRecordType.DATA:
			# only used by the filter role
			return

		else:
			await self.write_record(FCGIRecordType.UNKNOWN_TYPE, FCGI_NULL_REQUEST_ID, FCGIUnknownTypeBody(record.get_type_value()).to_bytes())

	async def run(self):
		try:
			while self.connection.closing is False:
				record = await FCGIRecord.from_streamreader(self.connection)
				if record is None:
					break
				await self.__handle_record(record)
		except FCGIProtocolError as e:
			logger.debug('[%s] Protocol error: %s' % (self.client_id, e))
		except (ConnectionError, OSError) as e:
			logger.debug('[%s] Connection error: %s' % (self.client_id, e))
		finally:
			for request in list(self.requests.values()):
				if request.task is not None:
					request.task.cancel()
				await request.stdin.put(h11.ConnectionClosed())
			self.requests = {}


class FCGIServer:
	"""
	FastCGI responder. By default it accepts connections on the listening
	socket inherited as file descriptor 0, the way FastCGI process managers
	start their applications.
	"""
	def __init__(self, client_handler, host:str = None, port:int = None, sock:socket.socket = None, max_conns:int = 100, max_reqs:int = 100):
		self.client_handler = client_handler
		self.host = host
		self.port = port
		self.sock = sock
		self.max_conns = max_conns
		self.max_reqs = max_reqs
		self.server = None
		self.connections = []
		self.id_counter = 0

	async def __aenter__(self):
		await self.start()
		return self

	async def __aexit__(self, exc_type, exc, tb):
		await self.terminate()

	def get_port(self):
		return self.server.sockets[0].getsockname()[1]

	async def start(self):
		if self.sock is None and self.host is None:
			self.sock = socket.socket(fileno=0)
		if self.sock is not None:
			if self.sock.family == socket.AF_UNIX:
				self.server = await asyncio.start_unix_server(self.__accept, sock=self.sock)
			else:
				self.server = await asyncio.start_server(self.__accept, sock=self.sock)
		else:
			self.server = await asyncio.start_server(self.__accept, self.host, self.port)
		logger.info('FastCGI responder listening on %s' % ', '.join(str(s.getsockname()) for s in self.server.sockets))
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
		client_id = self.id_counter
		self.id_counter += 1
		self.connections.append(connection)
		logger.debug('[%s] New FastCGI connection' % client_id)
		try:
			await FCGIConnection(self, connection, client_id).run()
		finally:
			self.connections.remove(connection)
			await connection.close()
