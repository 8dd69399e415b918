import html
import stat
import datetime
import urllib.parse
from typing import List

from asyup.listing import FileEntry, SortKey


class ListingContext:
	def __init__(self, path:str, is_root:bool, upload_enabled:bool, entries:List[FileEntry], sort_key:SortKey = SortKey.NAME, reverse:bool = False):
		self.path = path
		self.is_root = is_root
		self.upload_enabled = upload_enabled
		self.entries = entries
		self.sort_key = sort_key
		self.reverse = reverse


def format_mtime(mtime:float):
	return datetime.datetime.fromtimestamp(mtime).strftime('%Y-%m-%d %H:%M:%S')

def format_mode(mode:int):
	return stat.filemode(mode)

def _sort_link(ctx:ListingContext, key:SortKey):
	query = {'sort' : key.value}
	if ctx.reverse is True:
		query['by'] = 'asc'
	return '?' + urllib.parse.urlencode(query)

def _header_cell(ctx:ListingContext, key:SortKey, title:str):
	marker = ''
	if ctx.sort_key == key:
		marker = ' &uarr;' if ctx.reverse else ' &darr;'
	return '<th><a href="%s">%s</a>%s</th>' % (html.escape(_sort_link(ctx, key)), title, marker)

def render_listing(ctx:ListingContext) -> str:
	title = html.escape(ctx.path)
	page = '''<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <title>Index of %s</title>
    <style>
        body { font-family: monospace; margin: 20px; }
        table { border-collapse: collapse; }
        th, td { padding: 2px 12px; text-align: left; }
        td.size { text-align: right; }
        a { text-decoration: none; }
        form { margin-bottom: 16px; }
    </style>
</head>
<body>
    <h1>Index of %s</h1>
''' % (title, title)

	if ctx.upload_enabled is True:
		page += '''    <form method="post" enctype="multipart/form-data">
        <input type="file" name="file" multiple>
        <input type="submit" value="Upload">
    </form>
'''

	page += '    <table>\n        <tr>'
	page += _header_cell(ctx, SortKey.NAME, 'Name')
	page += _header_cell(ctx, SortKey.SIZE, 'Size')
	page += _header_cell(ctx, SortKey.TIME, 'Modified')
	page += _header_cell(ctx, SortKey.MODE, 'Mode')
	page += '</tr>\n'

	if ctx.is_root is False:
		page += '        <tr><td><a href="../">..</a></td><td class="size">-</td><td></td><td></td></tr>\n'

	for entry in ctx.entries:
		name = entry.name
		href = urllib.parse.quote(name, errors='surrogateescape')
		size = str(entry.size)
		if entry.is_dir:
			name += '/'
			href += '/'
			size = '-'
		page += '        <tr><td><a href="%s">%s</a></td><td class="size">%s</td><td>%s</td><td>%s</td></tr>\n' % (
			html.escape(href),
			html.escape(name),
			size,
			format_mtime(entry.mtime),
			format_mode(entry.mode),
		)

	page += '''    </table>
</body>
</html>
'''
	return page
