import asyncio

import h11
import pytest

from asyup.handler import FileServerHandler
from asyup.server.httpserver import HTTPServer, get_header
from asyup.test.utils import make_multipart, multipart_content_type


class Client:
	"""Minimal h11 based HTTP/1.1 client, one request at a time on a kept alive connection"""
	def __init__(self, reader, writer):
		self.reader = reader
		self.writer = writer
		self.conn = h11.Connection(h11.CLIENT)

	async def send(self, *events):
		for event in events:
			data = self.conn.send(event)
			if data:
				self.writer.write(data)
		await self.writer.drain()

	async def next_event(self):
		while True:
			event = self.conn.next_event()
			if event is h11.NEED_DATA:
				data = await asyncio.wait_for(self.reader.read(65536), timeout=5)
				self.conn.receive_data(data)
				continue
			return event

	async def request(self, method:str, target:str, headers = None, body:bytes = b''):
		request_headers = [('Host', 'localhost'), ('Content-Length', str(len(body)))]
		if headers is not None:
			request_headers.extend(headers)
		await self.send(h11.Request(method=method, target=target, headers=request_headers))
		if len(body) > 0:
			await self.send(h11.Data(data=body))
		await self.send(h11.EndOfMessage())

		response = await self.next_event()
		data = b''
		while True:
			event = await self.next_event()
			if isinstance(event, h11.Data):
				data += event.data
			elif isinstance(event, h11.EndOfMessage):
				break
		if self.conn.our_state is h11.DONE and self.conn.their_state is h11.DONE:
			self.conn.start_next_cycle()
		return response, data

	def close(self):
		self.writer.close()


async def connect(server:HTTPServer):
	reader, writer = await asyncio.open_connection('127.0.0.1', server.get_port())
	return Client(reader, writer)


class TestHTTPServer:
	@pytest.mark.asyncio
	async def test_keep_alive(self, config):
		async with HTTPServer(lambda: FileServerHandler(config), '127.0.0.1', 0) as server:
			client = await connect(server)
			response, body = await client.request('GET', '/')
			assert response.status_code == 200
			assert b'hello.txt' in body
			assert get_header(response.headers, b'server').startswith('asyup/')
			assert get_header(response.headers, b'date') is not None

			response, body = await client.request('GET', '/hello.txt')
			assert response.status_code == 200
			assert body == b'hello world'

			response, _ = await client.request('GET', '/sub')
			assert response.status_code == 302
			assert get_header(response.headers, b'location') == '/sub/'
			client.close()

	@pytest.mark.asyncio
	async def test_upload_then_download(self, served_dir, config):
		data = bytes(range(256)) * 1000
		body = make_multipart([('file', 'blob.bin', data)])
		async with HTTPServer(lambda: FileServerHandler(config), '127.0.0.1', 0) as server:
			client = await connect(server)
			response, _ = await client.request('POST', '/sub/', [('Content-Type', multipart_content_type())], body)
			assert response.status_code == 302
			assert get_header(response.headers, b'location') == '/sub/'

			response, downloaded = await client.request('GET', '/sub/blob.bin')
			assert response.status_code == 200
			assert downloaded == data
			client.close()
		assert (served_dir / 'sub' / 'blob.bin').read_bytes() == data

	@pytest.mark.asyncio
	async def test_unread_body_is_drained(self, readonly_config):
		body = make_multipart([('file', 'x.txt', b'y' * 50000)])
		async with HTTPServer(lambda: FileServerHandler(readonly_config), '127.0.0.1', 0) as server:
			client = await connect(server)
			response, _ = await client.request('POST', '/', [('Content-Type', multipart_content_type())], body)
			assert response.status_code == 405
			# the same connection still serves the next request
			response, body = await client.request('GET', '/hello.txt')
			assert response.status_code == 200
			assert body == b'hello world'
			client.close()

	@pytest.mark.asyncio
	async def test_expect_100_continue(self, served_dir, config):
		body = make_multipart([('file', 'continued.txt', b'abc')])
		async with HTTPServer(lambda: FileServerHandler(config), '127.0.0.1', 0) as server:
			client = await connect(server)
			await client.send(h11.Request(method='POST', target='/', headers=[
				('Host', 'localhost'),
				('Content-Length', str(len(body))),
				('Content-Type', multipart_content_type()),
				('Expect', '100-continue'),
			]))
			event = await client.next_event()
			assert isinstance(event, h11.InformationalResponse)
			assert event.status_code == 100
			await client.send(h11.Data(data=body), h11.EndOfMessage())
			event = await client.next_event()
			assert isinstance(event, h11.Response)
			assert event.status_code == 302
			client.close()
		assert (served_dir / 'continued.txt').read_bytes() == b'abc'

	@pytest.mark.asyncio
	async def test_malformed_request(self, config):
		async with HTTPServer(lambda: FileServerHandler(config), '127.0.0.1', 0) as server:
			reader, writer = await asyncio.open_connection('127.0.0.1', server.get_port())
			writer.write(b'THIS IS NOT HTTP\r\n\r\n')
			await writer.drain()
			data = await asyncio.wait_for(reader.read(), timeout=5)
			assert data.startswith(b'HTTP/1.1 400 ')
			writer.close()

	@pytest.mark.asyncio
	async def test_concurrent_clients(self, config):
		async with HTTPServer(lambda: FileServerHandler(config), '127.0.0.1', 0) as server:
			clients = [await connect(server) for _ in range(5)]
			results = await asyncio.gather(*[c.request('GET', '/hello.txt') for c in clients])
			for response, body in results:
				assert response.status_code == 200
				assert body == b'hello world'
			for c in clients:
				c.close()
