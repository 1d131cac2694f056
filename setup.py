from setuptools import setup

setup(
	name='redact-pdf',
	version='0.1.0',
	description='Redact text from PDF content streams at the match, operator, text object, graphics state, stream or page level.',
	long_description='''
	A PDF content stream redaction tool, in pure Python.

	redact-pdf uses pdfrw under the hood to parse and write out the PDF.

	It removes text matching a regular expression from the content streams of a
	document's pages and form XObjects. Matches can be redacted at several scopes:

	* the matching text only
	* the operator (e.g. Tj) that shows the matching text
	* the text object (BT ... ET) containing the matching text
	* the graphics state block (q ... Q) containing the matching text
	* the whole content stream containing the matching text
	* the whole page containing the matching text

	Unmatched content is written back byte for byte.
	''',
	py_modules=['redact_pdf'],
	entry_points={
		'console_scripts': [
			'redact-pdf = redact_pdf:main',
		],
	},
	python_requires='>=3.8',
	classifiers=[
		'Development Status :: 4 - Beta',
		'Intended Audience :: Developers',
		'License :: CC0 1.0 Universal (CC0 1.0) Public Domain Dedication',
		'Operating System :: OS Independent',
		'Programming Language :: Python',
		'Programming Language :: Python :: 3',
		'Topic :: Office/Business',
		'Topic :: Software Development :: Libraries',
		'Topic :: Software Development :: Libraries :: Python Modules',
		'Topic :: Utilities',
	],
	install_requires=[
		'pdfrw>=0.4',
	],
	extras_require={
		'test': [
			'pytest',
		],
	},
)
