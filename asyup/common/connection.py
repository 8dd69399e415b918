import asyncio


class Connection:
	"""Thin wrapper around an asyncio stream pair, shared by the HTTP and FastCGI servers."""
	def __init__(self, reader:asyncio.StreamReader, writer:asyncio.StreamWriter, buffer_size:int = 65536):
		self.reader = reader
		self.writer = writer
		self.buffer_size = buffer_size
		self.closing = False
		self.closed_evt = asyncio.Event()

	async def __aenter__(self):
		return self

	async def __aexit__(self, exc_type, exc, tb):
		await self.close()

	def get_extra_info(self, name, default=None):
		return self.writer.get_extra_info(name, default)

	def get_peer_name(self):
		peer = self.get_extra_info('peername')
		if isinstance(peer, tuple):
			return '%s:%s' % (peer[0], peer[1])
		if peer is None or peer == '':
			return 'unix'
		return str(peer)

	async def close(self):
		if self.closing is True:
			return
		self.closing = True
		try:
			self.writer.close()
			await self.writer.wait_closed()
		except (ConnectionError, OSError):
			pass
		finally:
			self.closed_evt.set()

	async def write(self, data:bytes):
		self.writer.write(data)
		await self.writer.drain()

	async def read_one(self):
		"""Whatever data is available, b'' once the peer has closed"""
		if self.closing is True:
			return b''
		return await self.reader.read(self.buffer_size)

	async def readexactly(self, n:int):
		return await self.reader.readexactly(n)
