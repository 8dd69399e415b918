import os

import h11

from asyup.config import ServerConfig
from asyup.handler import FileServerHandler

BOUNDARY = 'xXxBoundaryxXx'


def make_multipart(parts, boundary:str = BOUNDARY):
	"""parts: list of (field name, filename or None, bytes)"""
	body = b''
	for name, filename, data in parts:
		body += b'--' + boundary.encode() + b'\r\n'
		disposition = 'form-data; name="%s"' % name
		if filename is not None:
			disposition += '; filename="%s"' % filename
		body += ('Content-Disposition: %s\r\n' % disposition).encode()
		if filename is not None:
			body += b'Content-Type: application/octet-stream\r\n'
		body += b'\r\n' + data + b'\r\n'
	body += b'--' + boundary.encode() + b'--\r\n'
	return body

def multipart_content_type(boundary:str = BOUNDARY):
	return 'multipart/form-data; boundary=%s' % boundary


class RecordingWrapper:
	"""Collects the response events a handler sends and feeds it a request body"""
	def __init__(self, body:bytes = b'', chunk_size:int = 7):
		self.events = []
		self.incoming = [h11.Data(data=body[i:i+chunk_size]) for i in range(0, len(body), chunk_size)]
		self.incoming.append(h11.EndOfMessage())

	def basic_headers(self):
		return [("Date", b"Thu, 01 Jan 1970 00:00:00 GMT"), ("Server", b"test")]

	async def send(self, event):
		self.events.append(event)

	async def next_event(self):
		return self.incoming.pop(0)

	@property
	def response(self):
		for event in self.events:
			if isinstance(event, h11.Response):
				return event
		return None

	@property
	def status_code(self):
		return self.response.status_code

	def get_header(self, name:str):
		for hname, value in self.response.headers:
			if hname.lower() == name.lower().encode():
				return value.decode('latin-1')
		return None

	@property
	def body(self):
		return b''.join(bytes(e.data) for e in self.events if isinstance(e, h11.Data))

	@property
	def finished(self):
		return len(self.events) > 0 and isinstance(self.events[-1], h11.EndOfMessage)


async def run_request(config:ServerConfig, method:str, target:str, headers = None, body:bytes = b''):
	request_headers = [('Host', 'localhost')]
	if headers is not None:
		request_headers.extend(headers)
	if len(body) > 0:
		request_headers.append(('Content-Length', str(len(body))))
	request = h11.Request(method=method, target=target, headers=request_headers)
	wrapper = RecordingWrapper(body)
	await FileServerHandler(config)._process_request(wrapper, request)
	return wrapper

def set_mtime(path, mtime:float):
	os.utime(path, (mtime, mtime))
