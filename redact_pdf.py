# A scope-aware PDF content stream redaction tool.

import argparse
import logging
import os
import re
import sys
import tempfile
from collections import namedtuple
from enum import IntEnum

log = logging.getLogger(__name__)


class Scope(IntEnum):
	"""The granularity at which a match is redacted, from finest to coarsest."""

	MATCH = 0           # only the matching text
	OPERATOR = 1        # the operator (e.g. Tj) using the matching text
	TEXT_OBJECT = 2     # the text object (BT/ET) containing the matching text
	GRAPHICS_STATE = 3  # the graphics state block (q/Q) containing the matching text
	STREAM = 4          # the content stream containing the matching text
	PAGE = 5            # the page containing the matching text

	@property
	def nestable(self):
		# Only scopes with start/end operators can be nested.
		return self in (Scope.TEXT_OBJECT, Scope.GRAPHICS_STATE)


# Command-line flags used to set the scope; the index matches the enum value.
SCOPE_FLAGS = "motqsp"


class RedactionError(Exception):
	pass


class RedactorOptions:
	"""Redaction and I/O options."""

	# Input/Output. When None, standard input and standard output are used.
	input_stream = None # input byte stream containing the PDF to redact
	output_stream = None # output byte stream to write the new, redacted PDF to

	# The regular expression to redact. It may be a string or a compiled
	# pattern and is tested against the text of string operands in the
	# content streams (the string's bytes read as Latin-1), not the raw bytes
	# of the stream.
	pattern = None

	# The granularity at which matches are redacted. See Scope.
	scope = Scope.MATCH

	# pdfrw writes the decompressed content streams back out as-is. Set this
	# to recompress every uncompressed stream with Flate when writing (the
	# --compress command-line flag).
	compress = False

	# After redaction, drop fonts, images and other resources that are no
	# longer named by the content streams that use them.
	remove_unreferenced_resources = True


def redactor(options):
	# This is the function that performs redaction. It returns the
	# RedactionContext of the run, which holds its counters.

	from pdfrw import PdfReader, PdfWriter

	pattern = options.pattern
	if isinstance(pattern, str):
		pattern = re.compile(pattern)
	if pattern is None:
		raise ValueError("No redaction pattern was given.")

	# Read the PDF.
	document = PdfReader(options.input_stream or sys.stdin.buffer)

	# Redact its pages.
	context = redact_document(document, pattern, Scope(options.scope),
		remove_resources=options.remove_unreferenced_resources)

	# Write the PDF back out.
	writer = PdfWriter(compress=options.compress)
	writer.trailer = document
	writer.write(options.output_stream or sys.stdout.buffer)

	return context


def redact_file(infile, outfile, options):
	# Redact infile into outfile, or into infile itself when outfile is None.
	# The output goes to a temporary file beside the target which then
	# atomically replaces it, so a failed run never leaves a partial file.
	target = outfile or infile
	fd, temp_path = tempfile.mkstemp(
		prefix="." + os.path.basename(target) + ".",
		suffix="~",
		dir=os.path.dirname(os.path.abspath(target)))
	try:
		with os.fdopen(fd, "wb") as output_file, open(infile, "rb") as input_file:
			options.input_stream = input_file
			options.output_stream = output_file
			context = redactor(options)
		os.replace(temp_path, target)
	except BaseException:
		os.unlink(temp_path)
		raise
	return context


## Tokens

# Token kinds. Numbers, names, delimiters, booleans, comments and inline
# image data are all OTHER since the filter handles them the same way.
WORD = "word"
STRING = "string"
SPACE = "space"
OTHER = "other"

Token = namedtuple("Token", ["kind", "raw", "decoded"])

# Table 3.1 of the PDF reference defines whitespace (pdfrw uses the same set).
WHITESPACE = "\x00 \t\f\n\r"

_NUMBER = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)$")

# Inline image data runs from the single whitespace after ID up to an EI
# operator delimited by whitespace.
_INLINE_IMAGE_END = re.compile(r"[\x00 \t\f\n\r]EI(?=[\x00 \t\f\n\r]|$)")


def _make_token(kind, text, decoded=None):
	# pdfrw works on content streams decoded as Latin-1, so the raw bytes
	# come back out by encoding the same way.
	return Token(kind, text.encode("latin-1"), text if decoded is None else decoded)


def _gap_token(text):
	# pdfrw skips whitespace and comments. Recover them so nothing is lost
	# when the tokens are written back out.
	if text.strip(WHITESPACE) == "":
		return _make_token(SPACE, text)
	return _make_token(OTHER, text)


def tokenize(data):
	# pdfrw's tokenizer PdfTokens does lexical analysis only and discards
	# whitespace and comments. We need every byte of the stream to be able
	# to replay unredacted content exactly, so track each token's span in
	# the source (PdfTokens.current holds the span of the last token plus
	# its trailing whitespace) and emit the gaps as tokens too.
	from pdfrw import PdfTokens, PdfString, PdfObject

	if isinstance(data, bytes):
		data = data.decode("latin-1")

	pos = 0
	start_loc = 0
	while start_loc is not None:
		source = PdfTokens(data, start_loc)
		start_loc = None
		for token in source:
			start, end = source.current[0]
			if start > pos:
				yield _gap_token(data[pos:start])
			token_end = start + len(token)

			if isinstance(token, PdfString):
				yield _make_token(STRING, data[start:token_end], token.to_bytes().decode("latin-1"))
			elif isinstance(token, PdfObject) and not _NUMBER.match(token) \
				and token not in ("true", "false", "null"):
				yield _make_token(WORD, data[start:token_end])
			else:
				# Names, numbers, booleans and delimiters.
				yield _make_token(OTHER, data[start:token_end])
			pos = token_end

			if token == "ID":
				# Inline image data is binary and must not be lexed. Pass it
				# through as a single token and start tokenizing again at EI.
				m = _INLINE_IMAGE_END.search(data, token_end)
				image_end = m.start() + 1 if m else len(data)
				if image_end > token_end:
					yield _make_token(OTHER, data[token_end:image_end])
				pos = image_end
				if m:
					start_loc = image_end
				break

			if end > token_end:
				yield _make_token(SPACE, data[token_end:end])
				pos = end

	if pos < len(data):
		yield _gap_token(data[pos:])


def encode_string(value):
	# Serialize the (Latin-1) text of a string operand as a PDF string.
	from pdfrw import PdfString
	return str(PdfString.from_bytes(value.encode("latin-1"))).encode("latin-1")


## The token filter

class _Frame(object):
	# A buffer of not-yet-written content. It holds the raw bytes to write if
	# the buffer is kept, the text of its string operands to test for
	# redaction, and whether a match has already been seen inside it.
	def __init__(self):
		self.data = []
		self.text = []
		self.redact = False


class RedactionFilter(object):
	"""Removes matches from a stream of content stream tokens at a scope.

	Spans of tokens that may need to be redacted (operators with their
	operands, text objects, graphics state blocks) are buffered in a stack
	of frames until the token that closes them is seen, then either written
	to the next lower frame or dropped. The bottom frame is the output.

	A filter handles a single content stream. Feed it tokens with
	handle_token() and call handle_eof() to get the rewritten bytes and
	whether the stream matched at the filter's scope or above.
	"""

	def __init__(self, pattern, scope):
		self.pattern = pattern
		self.scope = scope
		self.matched = False
		self._stack = [_Frame()]
		self._trim = False

	def _add(self, token):
		# Add a token to the currently active frame.
		target = self._stack[-1]
		target.data.append(token.raw)
		if token.kind == STRING:
			target.text.append(token.decoded)
		self._trim = False

	def _flush(self):
		# Resolve the currently active frame into the next lower frame.
		target = self._stack.pop()
		if not target.redact and not self.pattern.search("".join(target.text)):
			parent = self._stack[-1]
			parent.data.extend(target.data)
			parent.text.extend(target.text)
			self._trim = False
		else:
			# Since the filter is operating on a stream, flag the immediate
			# next whitespace as also requiring redaction.
			self.matched = True
			self._trim = True

	def _start(self, scope, token):
		# Start a new frame only if this is the filter's scope and there is
		# no frame open already or the scope is nestable.
		if self.scope == scope and (scope.nestable or len(self._stack) == 1):
			self._stack.append(_Frame())
		self._add(token)

	def _end(self, scope, token):
		self._add(token)
		if self.scope == scope and len(self._stack) > 1:
			self._flush()

	def handle_token(self, token):
		if token.kind == WORD:
			# Start/end operators (which have no operands) delimit text
			# objects and graphics state blocks. Any other word ends an
			# operator, which may have operands.
			if token.decoded == "BT":
				self._start(Scope.TEXT_OBJECT, token)
			elif token.decoded == "ET":
				self._end(Scope.TEXT_OBJECT, token)
			elif token.decoded == "q":
				self._start(Scope.GRAPHICS_STATE, token)
			elif token.decoded == "Q":
				self._end(Scope.GRAPHICS_STATE, token)
			else:
				self._end(Scope.OPERATOR, token)

		elif token.kind == SPACE:
			# Drop the space right after a redaction so no double space is
			# left where the redacted content was.
			if not self._trim:
				self._add(token)
			self._trim = False

		elif token.kind == STRING and self.scope == Scope.MATCH:
			# For match-scoped redactions, remove the matches from the string
			# and write the string back out. Unchanged strings keep their
			# original bytes.
			redacted = self.pattern.sub("", token.decoded)
			if redacted != token.decoded:
				self.matched = True
				token = Token(STRING, encode_string(redacted), redacted)
			self._add(token)

		else:
			# Any other token may be an operand that needs to be dropped as
			# part of redacting an operator. Operators can't be nested, so
			# starting one repeatedly is safe.
			self._start(Scope.OPERATOR, token)
			if token.kind == STRING and self.pattern.search(token.decoded):
				self._stack[-1].redact = True

	def handle_eof(self):
		# Flush any remaining open frames.
		while len(self._stack) > 1:
			self._flush()

		output = self._stack.pop()
		if output.redact or self.pattern.search("".join(output.text)):
			self.matched = True
		return b"".join(output.data), self.matched


def filter_tokens(tokens, pattern, scope):
	f = RedactionFilter(pattern, scope)
	for token in tokens:
		f.handle_token(token)
	return f.handle_eof()


## Stream driver

KEEP = "keep"
DROP_STREAM = "drop-stream"
DROP_PAGE = "drop-page"

StreamAction = namedtuple("StreamAction", ["action", "data"])


def redact_stream(data, pattern, scope):
	# Run the filter over one content stream and decide what happens to it.
	rewritten, matched = filter_tokens(tokenize(data), pattern, scope)
	if matched and scope == Scope.PAGE:
		return StreamAction(DROP_PAGE, None)
	if matched and scope == Scope.STREAM:
		return StreamAction(DROP_STREAM, None)
	return StreamAction(KEEP, rewritten)


## Document engine helpers

def read_stream(obj):
	# If a compression Filter is applied, un-apply it. pdfrw only knows
	# Flate; anything else can't be tokenized.
	from pdfrw.uncompress import uncompress as uncompress_streams
	if not uncompress_streams([obj]):
		raise RedactionError("Cannot decompress content stream with filter %s." % obj.Filter)
	return (obj.stream or "").encode("latin-1")


def write_stream(obj, data):
	obj.stream = data.decode("latin-1")
	obj.Length = len(data) # reset


def is_form(obj):
	from pdfrw import PdfName
	return obj.Subtype == PdfName.Form


def get_contents(obj):
	# A page may have one content stream or an array of content streams,
	# which are treated as if they were concatenated. A form XObject is its
	# own content stream.
	from pdfrw import PdfArray
	if is_form(obj):
		return [obj]
	if obj.Contents is None:
		return []
	if isinstance(obj.Contents, PdfArray):
		return list(obj.Contents)
	return [obj.Contents]


def set_contents(obj, contents):
	from pdfrw import PdfArray
	if is_form(obj):
		# A form XObject whose stream was dropped is left in place but
		# emptied, so references to it from other content stay valid.
		if not contents:
			write_stream(obj, b"")
		return
	if obj.Contents is None and not contents:
		return
	obj.Contents = contents[0] if len(contents) == 1 else PdfArray(contents)


def get_resources(obj):
	# Page resources may be inherited from the page tree.
	if is_form(obj):
		return obj.Resources
	return obj.inheritable.Resources


def get_form_xobjects(obj):
	from pdfrw import PdfName
	resources = get_resources(obj)
	if resources is None or resources.XObject is None:
		return []
	return [
		(name, xobject)
		for name, xobject in resources.XObject.items()
		if xobject is not None and xobject.Subtype == PdfName.Form
	]


def remove_page(page):
	# Unlink the page from the page tree and fix up the page counts of its
	# ancestors.
	from pdfrw import PdfArray
	parent = page.Parent
	if parent is not None and parent.Kids is not None:
		parent.Kids = PdfArray([kid for kid in parent.Kids if kid is not page])
		while parent is not None:
			parent.Count = max(int(parent.Count or 0) - 1, 0)
			parent = parent.Parent

	# The page can still be reachable from outlines or links, so clear out
	# the content that got it removed.
	page.Contents = None


RESOURCE_CATEGORIES = ("Font", "XObject", "ExtGState", "ColorSpace", "Pattern",
	"Shading", "Properties")


def remove_unreferenced_resources(pages):
	# Drop resources that are no longer named by any content stream. A
	# resource dictionary can be shared by many pages and forms, so first
	# gather the names used by every content stream that uses each one.
	from pdfrw import PdfName

	users = { }
	visited = set()

	def visit(obj, inherited):
		# A form without resources of its own uses those of whatever draws
		# it, so it is visited once per inherited resource dictionary.
		key = (id(obj), id(inherited))
		if key in visited:
			return
		visited.add(key)

		resources = get_resources(obj) or inherited
		if resources is None:
			return
		names = users.setdefault(id(resources), (resources, set()))[1]
		for stream in get_contents(obj):
			for token in tokenize(read_stream(stream)):
				if token.kind == OTHER and token.decoded.startswith("/"):
					names.add(token.decoded)

		for name, form in get_form_xobjects(obj):
			visit(form, resources)

	for page in pages:
		visit(page, None)

	removed = 0
	for resources, names in users.values():
		for category in RESOURCE_CATEGORIES:
			entries = resources.get(PdfName(category))
			if entries is None or not hasattr(entries, "keys"):
				continue
			for key in list(entries.keys()):
				if key not in names:
					log.debug("removing unreferenced resource %s %s", category, key)
					entries[key] = None
					removed += 1
	return removed


## Orchestration

class RedactionContext(object):
	"""The state of one redaction run."""

	def __init__(self, pattern, scope):
		self.pattern = pattern
		self.scope = scope

		# Results by object identity. Content streams and forms can be
		# shared between pages and are only processed once.
		self.streams = { }
		self.forms = { }

		self.pages_removed = 0
		self.streams_dropped = 0
		self.streams_rewritten = 0

	def apply(self, stream):
		key = id(stream)
		if key not in self.streams:
			data = read_stream(stream)
			result = redact_stream(data, self.pattern, self.scope)
			if result.action == KEEP and result.data != data:
				write_stream(stream, result.data)
				self.streams_rewritten += 1
			elif result.action == DROP_STREAM:
				self.streams_dropped += 1
			log.debug("content stream %s: %s", key, result.action)
			self.streams[key] = result
		return self.streams[key]


def redact_page(page, context):
	# Redact the contents of a page or form XObject, then the form XObjects
	# it uses. Returns whether the entire page must be removed.
	contents = []
	for stream in get_contents(page):
		result = context.apply(stream)
		if result.action == DROP_PAGE:
			# For page-scoped redactions, simply bail here.
			return True
		if result.action == DROP_STREAM:
			# For stream-scoped redactions, omit the stream.
			continue
		contents.append(stream)
	set_contents(page, contents)

	# A match in a form used by the page is a match on the page.
	for name, form in get_form_xobjects(page):
		key = id(form)
		if key not in context.forms:
			# Mark it first so a form that uses itself ends the recursion.
			context.forms[key] = False
			context.forms[key] = redact_page(form, context)
		if context.forms[key]:
			log.debug("form XObject %s matched", name)
			return True

	return False


def redact_document(document, pattern, scope, remove_resources=True):
	context = RedactionContext(pattern, scope)

	# For each page...
	kept = []
	for i, page in enumerate(list(document.pages)):
		if redact_page(page, context):
			log.info("removing page %d", i + 1)
			remove_page(page)
			context.pages_removed += 1
		else:
			kept.append(page)

	# Remove any resources (e.g. fonts) that are no longer used once the
	# desired text has been redacted.
	if remove_resources:
		remove_unreferenced_resources(kept)

	log.info("%d page(s) removed, %d content stream(s) dropped, %d rewritten",
		context.pages_removed, context.streams_dropped, context.streams_rewritten)
	return context


## Command line

def parse_args(argv=None):
	parser = argparse.ArgumentParser(
		prog="redact-pdf",
		description="Redact text matching a regular expression from the content streams of a PDF.")
	scopes = [
		(Scope.MATCH, "match", "redact only the matching text (default)"),
		(Scope.OPERATOR, "operator", "redact the operator (e.g. Tj) containing the match"),
		(Scope.TEXT_OBJECT, "text-object", "redact the text object (BT/ET) containing the match"),
		(Scope.GRAPHICS_STATE, "graphics-state", "redact the graphics state block (q/Q) containing the match"),
		(Scope.STREAM, "stream", "redact the content stream containing the match"),
		(Scope.PAGE, "page", "redact the page containing the match"),
	]
	for scope, name, text in scopes:
		# All flags share one destination, so the last one given wins.
		parser.add_argument("-" + SCOPE_FLAGS[scope], "--" + name, dest="scope",
			action="store_const", const=scope, help=text)
	parser.set_defaults(scope=Scope.MATCH)
	parser.add_argument("--compress", action="store_true",
		help="compress content streams with Flate in the output")
	parser.add_argument("-v", "--verbose", action="count", default=0,
		help="log more (repeat for debugging output)")
	parser.add_argument("pattern", help="regular expression to redact")
	parser.add_argument("infile", help="PDF to redact")
	parser.add_argument("outfile", nargs="?",
		help="where to write the redacted PDF (default: edit infile in place)")
	return parser.parse_args(argv)


def main(argv=None):
	args = parse_args(argv)
	logging.basicConfig(
		level=(logging.WARNING, logging.INFO, logging.DEBUG)[min(args.verbose, 2)],
		format="%(name)s: %(levelname)s: %(message)s")

	try:
		options = RedactorOptions()
		options.pattern = re.compile(args.pattern)
		options.scope = args.scope
		options.compress = args.compress
		redact_file(args.infile, args.outfile, options)
	except Exception as e:
		print("redact-pdf: %s" % e, file=sys.stderr)
		return 2
	return 0


if __name__ == "__main__":
	sys.exit(main())
