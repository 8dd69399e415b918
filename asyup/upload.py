import os
import re
import posixpath
import urllib.parse
from typing import AsyncIterator, Dict, List

from asyup import logger

CRLF = b'\r\n'


class MultipartError(Exception):
	pass


_param_re = re.compile(r';\s*([^\s=;]+)\s*=\s*(?:"((?:[^"\\]|\\.)*)"|([^;]*))')

def parse_header_params(value:str):
	"""
	Splits a header value like 'form-data; name="file"; filename="a.txt"' into
	the leading token and a dict of lowercased parameter names.
	"""
	main, _, rest = value.partition(';')
	params = {}
	for m in _param_re.finditer(';' + rest):
		name = m.group(1).lower()
		if m.group(2) is not None:
			params[name] = re.sub(r'\\(.)', r'\1', m.group(2))
		else:
			params[name] = m.group(3).strip()
	return main.strip().lower(), params

def get_boundary(content_type:str) -> bytes:
	if content_type is None:
		raise MultipartError('Request Content-Type isn\'t multipart/form-data')
	ctype, params = parse_header_params(content_type)
	if ctype != 'multipart/form-data':
		raise MultipartError('Request Content-Type isn\'t multipart/form-data')
	boundary = params.get('boundary', '')
	if boundary == '' or len(boundary) > 70:
		raise MultipartError('Invalid or missing multipart boundary')
	return boundary.encode('latin-1')


class MultipartPart:
	def __init__(self, headers:Dict[str, str]):
		self.headers = headers
		self.name = None
		self.filename = None
		disposition = headers.get('content-disposition')
		if disposition is not None:
			_, params = parse_header_params(disposition)
			self.name = params.get('name')
			self.filename = params.get('filename')
			if 'filename*' in params:
				charset, _, encoded = params['filename*'].partition("''")
				try:
					self.filename = urllib.parse.unquote(encoded, encoding = charset or 'utf-8', errors='surrogateescape')
				except LookupError:
					raise MultipartError("Unknown charset '%s' in filename*" % charset) from None

	def get_filename(self):
		"""Final path component of the client supplied file name"""
		if self.filename is None:
			return ''
		return posixpath.basename(self.filename)

	def __repr__(self):
		return 'MultipartPart(name=%r, filename=%r)' % (self.name, self.filename)


class MultipartStreamProcessor:
	"""
	Incremental multipart/form-data parser. Chunks of the request body go in,
	part events come out:
		('begin', MultipartPart), ('data', bytes), ('end', MultipartPart)
	The body is never held in memory as a whole; at most one partial boundary
	and one header block are buffered.
	"""
	def __init__(self, boundary:bytes, max_header_size:int = 16*1024):
		self.delimiter = b'--' + boundary
		self.body_delimiter = CRLF + self.delimiter
		self.max_header_size = max_header_size
		self.buffer = b''
		self.state = 'preamble'
		self.current_part = None

	def process_chunk(self, chunk:bytes):
		self.buffer += chunk
		events = []
		while True:
			if self.state == 'preamble':
				if not self._process_preamble():
					break
			elif self.state == 'delimiter':
				if not self._process_delimiter():
					break
			elif self.state == 'headers':
				if not self._process_headers(events):
					break
			elif self.state == 'body':
				if not self._process_body(events):
					break
			else:
				# epilogue is ignored
				self.buffer = b''
				break
		return events

	def _process_preamble(self):
		pos = self.buffer.find(self.delimiter)
		if pos == -1:
			keep = len(self.delimiter) - 1
			if len(self.buffer) > keep:
				self.buffer = self.buffer[-keep:]
			return False
		self.buffer = self.buffer[pos + len(self.delimiter):]
		self.state = 'delimiter'
		return True

	def _process_delimiter(self):
		self.buffer = self.buffer.lstrip(b' \t')
		if len(self.buffer) < 2:
			return False
		if self.buffer.startswith(b'--'):
			self.state = 'done'
		elif self.buffer.startswith(CRLF):
			self.buffer = self.buffer[2:]
			self.state = 'headers'
		else:
			raise MultipartError('Malformed multipart delimiter line')
		return True

	def _process_headers(self, events):
		if self.buffer.startswith(CRLF):
			header_section = b''
			self.buffer = self.buffer[2:]
		else:
			header_end = self.buffer.find(CRLF + CRLF)
			if header_end == -1:
				if len(self.buffer) > self.max_header_size:
					raise MultipartError('Multipart part headers too long')
				return False
			header_section = self.buffer[:header_end]
			self.buffer = self.buffer[header_end + 4:]

		headers = {}
		for line in header_section.decode('utf-8', errors='surrogateescape').split('\r\n'):
			if line == '':
				continue
			name, sep, value = line.partition(':')
			if sep == '':
				raise MultipartError('Malformed multipart part header: %r' % line)
			headers[name.strip().lower()] = value.strip()

		self.current_part = MultipartPart(headers)
		events.append(('begin', self.current_part))
		self.state = 'body'
		return True

	def _process_body(self, events):
		pos = self.buffer.find(self.body_delimiter)
		if pos == -1:
			# the tail may hold the start of a delimiter split across chunks
			keep = len(self.body_delimiter) - 1
			if len(self.buffer) > keep:
				events.append(('data', self.buffer[:-keep]))
				self.buffer = self.buffer[-keep:]
			return False

		if pos > 0:
			events.append(('data', self.buffer[:pos]))
		events.append(('end', self.current_part))
		self.current_part = None
		self.buffer = self.buffer[pos + len(self.body_delimiter):]
		self.state = 'delimiter'
		return True

	def finalize(self):
		if self.state != 'done':
			raise MultipartError('Unexpected end of multipart stream')


class UploadHandler:
	"""
	Writes every part named 'file' of a multipart/form-data body into
	destination, overwriting files of the same name. Other form fields are
	skipped. Files written before an error stay on disk.
	"""
	def __init__(self, destination:str, content_type:str, field_name:str = 'file'):
		self.destination = destination
		self.field_name = field_name
		self.processor = MultipartStreamProcessor(get_boundary(content_type))
		self.current_file = None
		self.open_files = []
		self.completed_files:List[str] = []

	def _open_destination(self, part:MultipartPart):
		file_path = os.path.join(self.destination, part.get_filename())
		self.current_file = open(file_path, 'wb')
		self.open_files.append(self.current_file)

	def _handle_event(self, event):
		kind, value = event
		if kind == 'begin':
			if value.name != self.field_name:
				logger.debug("Skipping '%s'" % value.name)
				return
			logger.info("Handling '%s'" % value.name)
			self._open_destination(value)
		elif kind == 'data':
			if self.current_file is not None:
				self.current_file.write(value)
		elif kind == 'end':
			if self.current_file is not None:
				self.current_file.close()
				self.completed_files.append(self.current_file.name)
				logger.info("Uploaded '%s'" % self.current_file.name)
				self.current_file = None

	def process_chunk(self, chunk:bytes):
		for event in self.processor.process_chunk(chunk):
			self._handle_event(event)

	async def receive(self, chunks:AsyncIterator[bytes]):
		try:
			async for chunk in chunks:
				self.process_chunk(chunk)
			self.processor.finalize()
			return self.completed_files
		finally:
			self.close()

	def close(self):
		for f in self.open_files:
			f.close()
		self.open_files = []
		self.current_file = None
