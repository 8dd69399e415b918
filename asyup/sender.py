import os
import mimetypes
import datetime
import email.utils

import h11

from asyup import logger
from asyup.server.httpserver import ResponseAborted, get_header


def format_http_date(timestamp:float):
	dt = datetime.datetime.fromtimestamp(int(timestamp), datetime.timezone.utc)
	return email.utils.format_datetime(dt, usegmt=True)

def parse_http_date(value:str):
	"""Seconds since the epoch, or None if the date can't be parsed"""
	try:
		dt = email.utils.parsedate_to_datetime(value)
	except (TypeError, ValueError, IndexError):
		return None
	if dt is None:
		return None
	if dt.tzinfo is None:
		dt = dt.replace(tzinfo=datetime.timezone.utc)
	return int(dt.timestamp())

def make_etag(st:os.stat_result):
	return '"%x-%x"' % (st.st_mtime_ns, st.st_size)

def _split_etags(value:str):
	return [tag.strip() for tag in value.split(',') if tag.strip() != '']

def etag_matches(value:str, etag:str, weak:bool):
	for tag in _split_etags(value):
		if tag == '*':
			return True
		if weak is True:
			if tag.startswith('W/'):
				tag = tag[2:]
		elif tag.startswith('W/'):
			continue
		if tag == etag:
			return True
	return False

def parse_range(value:str, size:int):
	"""
	Parses a single byte range against a file of size bytes.
	Returns (start, end) inclusive, None when the header should be ignored
	(not bytes, multiple ranges, bad syntax) or False when the range is
	inverted or can't be satisfied.
	"""
	unit, sep, ranges = value.partition('=')
	if sep == '' or unit.strip().lower() != 'bytes':
		return None
	ranges = ranges.strip()
	if ',' in ranges:
		return None
	first, sep, last = ranges.partition('-')
	first, last = first.strip(), last.strip()
	if sep == '' or (first != '' and not first.isdigit()) or (last != '' and not last.isdigit()):
		return None

	if first == '':
		if last == '':
			return None
		length = int(last)
		if length == 0 or size == 0:
			return False
		return max(size - length, 0), size - 1

	start = int(first)
	if start >= size:
		return False
	if last == '':
		return start, size - 1
	end = int(last)
	if end < start:
		return False
	return start, min(end, size - 1)


class FileSender:
	"""
	Sends one regular file as the response body. Handles If-Match,
	If-Unmodified-Since, If-None-Match, If-Modified-Since, If-Range and single
	byte ranges, using the modification time and an mtime/size ETag as
	validators.
	"""
	def __init__(self, wrapper, chunk_size:int = 64*1024):
		self._wrapper = wrapper
		self.chunk_size = chunk_size

	async def _send_empty(self, status_code:int, headers):
		headers.append(("Content-Length", b"0"))
		await self._wrapper.send(h11.Response(status_code=status_code, headers=headers))
		await self._wrapper.send(h11.EndOfMessage())

	def _check_preconditions(self, request_headers, etag:str, mtime:int):
		"""Status code that ends the request early, or None"""
		if_match = get_header(request_headers, b'if-match')
		if if_match is not None:
			if not etag_matches(if_match, etag, weak=False):
				return 412
		else:
			if_unmodified = get_header(request_headers, b'if-unmodified-since')
			if if_unmodified is not None:
				t = parse_http_date(if_unmodified)
				if t is not None and mtime > t:
					return 412

		if_none_match = get_header(request_headers, b'if-none-match')
		if if_none_match is not None:
			if etag_matches(if_none_match, etag, weak=True):
				return 304
		else:
			if_modified = get_header(request_headers, b'if-modified-since')
			if if_modified is not None:
				t = parse_http_date(if_modified)
				if t is not None and mtime <= t:
					return 304
		return None

	def _range_allowed(self, request_headers, etag:str, mtime:int):
		if_range = get_header(request_headers, b'if-range')
		if if_range is None:
			return True
		if_range = if_range.strip()
		if if_range.startswith('"') or if_range.startswith('W/'):
			return if_range == etag
		return parse_http_date(if_range) == mtime

	async def send(self, file_path:str, st:os.stat_result, request_headers):
		etag = make_etag(st)
		mtime = int(st.st_mtime)
		last_modified = format_http_date(st.st_mtime).encode('ascii')
		headers = self._wrapper.basic_headers()
		headers.extend([
			("Last-Modified", last_modified),
			("ETag", etag.encode('ascii')),
		])

		status_code = self._check_preconditions(request_headers, etag, mtime)
		if status_code is not None:
			return await self._send_empty(status_code, headers)

		size = st.st_size
		start, end = 0, size - 1
		status_code = 200
		range_header = get_header(request_headers, b'range')
		if range_header is not None and self._range_allowed(request_headers, etag, mtime):
			byte_range = parse_range(range_header, size)
			if byte_range is False:
				headers.append(("Content-Range", ("bytes */%d" % size).encode('ascii')))
				return await self._send_empty(416, headers)
			if byte_range is not None:
				start, end = byte_range
				status_code = 206
				headers.append(("Content-Range", ("bytes %d-%d/%d" % (start, end, size)).encode('ascii')))

		content_length = end - start + 1
		mime_type, _ = mimetypes.guess_type(file_path)
		headers.extend([
			("Content-Type", (mime_type or 'application/octet-stream').encode('ascii')),
			("Content-Length", str(content_length).encode('ascii')),
			("Accept-Ranges", b"bytes"),
		])

		with open(file_path, 'rb') as f:
			if start > 0:
				f.seek(start)
			logger.info("Serving '%s'" % file_path)
			await self._wrapper.send(h11.Response(status_code=status_code, headers=headers))
			bytes_remaining = content_length
			try:
				while bytes_remaining > 0:
					chunk = f.read(min(self.chunk_size, bytes_remaining))
					if not chunk:
						raise OSError("File '%s' shrunk while being sent" % file_path)
					await self._wrapper.send(h11.Data(data=chunk))
					bytes_remaining -= len(chunk)
			except OSError as e:
				raise ResponseAborted(str(e)) from e
			await self._wrapper.send(h11.EndOfMessage())
