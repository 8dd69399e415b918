import os
import stat
import posixpath
import urllib.parse

import h11

from asyup import logger
from asyup.config import ServerConfig
from asyup.listing import SortKey, read_dir, reverse_from_query
from asyup.render import ListingContext, render_listing
from asyup.sender import FileSender
from asyup.upload import UploadHandler, MultipartError
from asyup.server.httpserver import HTTPServerHandler, get_header


def split_target(target:bytes):
	"""Raw (still percent-encoded) path and query string of a request target"""
	parts = urllib.parse.urlsplit(target.decode('latin-1'))
	path = parts.path
	if path == '':
		path = '/'
	return path, parts.query

def clean_path(url_path:str) -> str:
	"""
	Lexically cleans a decoded URL path: always rooted, no '.' or '..'
	segments, no repeated or trailing slashes. '..' at the root stays at the root.
	"""
	if url_path == '' or url_path[0] != '/':
		url_path = '/' + url_path
	cleaned = posixpath.normpath(url_path)
	if cleaned.startswith('//'):
		cleaned = '/' + cleaned.lstrip('/')
	return cleaned

def resolve_path(root:str, cleaned:str) -> str:
	"""Local filesystem path of a cleaned URL path below root"""
	if cleaned == '/':
		return root
	local = os.path.join(root, cleaned.lstrip('/'))
	abs_root = os.path.abspath(root)
	if os.path.commonpath([abs_root, os.path.abspath(local)]) != abs_root:
		raise ValueError("Path '%s' is outside of the served directory" % cleaned)
	return local


class FileServerHandler(HTTPServerHandler):
	"""
	Directory listing, file download and multipart upload on one URL space
	mapped onto config.root.
	"""
	def __init__(self, config:ServerConfig):
		super().__init__()
		self.config = config

	def get_allowed_methods(self):
		if self.config.upload is True:
			return ['GET', 'POST']
		return ['GET']

	def _resolve(self, raw_path:str):
		url_path = urllib.parse.unquote(raw_path, errors='surrogateescape')
		cleaned = clean_path(url_path)
		return cleaned, resolve_path(self.config.root, cleaned)

	async def do_POST(self, event:h11.Request):
		if self.config.upload is False:
			return await self.send_method_not_allowed()

		raw_path, _ = split_target(event.target)
		try:
			_, local_path = self._resolve(raw_path)
			uploader = UploadHandler(local_path, get_header(event.headers, b'content-type'))
			await uploader.receive(self.read_body())
		except (OSError, ValueError, MultipartError) as e:
			logger.info("ERROR: upload to '%s': %s" % (raw_path, e))
			return await self.send_error(500, str(e))

		await self.send_redirect(raw_path)

	async def do_GET(self, event:h11.Request):
		raw_path, query = split_target(event.target)
		try:
			cleaned, local_path = self._resolve(raw_path)
			entry_info = os.stat(local_path)
		except (OSError, ValueError) as e:
			logger.info("ERROR: os.stat('%s')" % raw_path)
			return await self.send_error(500, str(e))

		if stat.S_ISDIR(entry_info.st_mode):
			if not raw_path.endswith('/'):
				location = raw_path + '/'
				if query != '':
					location += '?' + query
				return await self.send_redirect(location)
			return await self.serve_listing(cleaned, local_path, query)

		return await self.serve_file(local_path, entry_info, event.headers)

	async def serve_listing(self, cleaned:str, local_path:str, query:str):
		params = urllib.parse.parse_qs(query)
		sort_key = SortKey.from_query(params.get('sort', [''])[0])
		reverse = reverse_from_query(params.get('by', [''])[0])
		try:
			entries = read_dir(local_path, sort_key, reverse)
		except OSError as e:
			logger.info("ERROR: ReadDir('%s')" % local_path)
			return await self.send_error(500, str(e))

		display_path = cleaned if cleaned == '/' else cleaned + '/'
		ctx = ListingContext(display_path, cleaned == '/', self.config.upload, entries, sort_key, reverse)
		try:
			body = render_listing(ctx).encode('utf-8', errors='surrogateescape')
		except Exception as e:
			logger.info('ERROR: Executing template')
			return await self.send_error(500, str(e))

		await self.send_response(200, body, content_type = 'text/html; charset=utf-8')

	async def serve_file(self, local_path:str, entry_info:os.stat_result, request_headers):
		try:
			await FileSender(self._wrapper).send(local_path, entry_info, request_headers)
		except OSError as e:
			logger.info("ERROR: open('%s')" % local_path)
			return await self.send_error(500, str(e))
