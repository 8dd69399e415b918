import os
import enum
from typing import List


class SortKey(enum.Enum):
	NAME = 'name'
	TIME = 'time'
	SIZE = 'size'
	MODE = 'mode'

	@staticmethod
	def from_query(value:str):
		"""Anything unknown (or missing) sorts by name"""
		try:
			return SortKey(value)
		except ValueError:
			return SortKey.NAME


def reverse_from_query(value:str) -> bool:
	# every key is presented descending unless ascending order is asked for
	return value == 'asc'


class FileEntry:
	def __init__(self, name:str, size:int, mtime:float, mode:int, is_dir:bool):
		self.name = name
		self.size = size
		self.mtime = mtime
		self.mode = mode
		self.is_dir = is_dir

	@staticmethod
	def from_direntry(entry:os.DirEntry):
		st = entry.stat(follow_symlinks=False)
		is_dir = entry.is_dir()
		if entry.is_symlink():
			try:
				target = entry.stat()
				st_size, st_mtime = target.st_size, target.st_mtime
			except OSError:
				# dangling link, list the link itself
				st_size, st_mtime = st.st_size, st.st_mtime
		else:
			st_size, st_mtime = st.st_size, st.st_mtime
		return FileEntry(entry.name, st_size, st_mtime, st.st_mode, is_dir)

	def __repr__(self):
		return 'FileEntry(%r, size=%s, mtime=%s, mode=%o, is_dir=%s)' % (self.name, self.size, self.mtime, self.mode, self.is_dir)


_sort_attrs = {
	SortKey.NAME : 'name',
	SortKey.TIME : 'mtime',
	SortKey.SIZE : 'size',
	SortKey.MODE : 'mode',
}

def sort_entries(entries:List[FileEntry], key:SortKey = SortKey.NAME, reverse:bool = False):
	"""
	Orders the entries in place. Without the reverse flag the largest value
	comes first for every key (newest first for time, Z before A for names).
	Equal keys keep their enumeration order.
	"""
	attr = _sort_attrs.get(key, 'name')
	entries.sort(key = lambda e: getattr(e, attr), reverse = not reverse)
	return entries


def scan_dir(dirname:str) -> List[FileEntry]:
	"""
	Metadata of every child of dirname, in the order the filesystem returns
	them. Errors opening or enumerating the directory are raised as OSError.
	"""
	with os.scandir(dirname) as it:
		return [FileEntry.from_direntry(entry) for entry in it]

def read_dir(dirname:str, key:SortKey = SortKey.NAME, reverse:bool = False) -> List[FileEntry]:
	return sort_entries(scan_dir(dirname), key, reverse)
