import base64
import dataclasses
import datetime
import logging
import re
import sys
import time
from enum import Enum
from http import HTTPStatus
from logging import Logger
from typing import Any, Optional, Sequence
from urllib import parse

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_s3.client import S3Client
from pythonjsonlogger.json import JsonFormatter
from pyvips import Error as VipsError  # type: ignore
from pyvips import Image  # type: ignore

import resizelambda
from resizelambda.typing import (
    HttpPath,
    OriginRequestEvent,
    Request,
    ResponseHeader,
    ResponseResult,
    S3Key
)

MAX_SIZE = 2000
DEFAULT_QUALITY = 80
DEFAULT_REGION = 'us-east-1'

# A bucket label must be longer than MIN_BUCKET_LEN and shorter than MAX_BUCKET_LEN.
MIN_BUCKET_LEN = 3
MAX_BUCKET_LEN = 64

ACCEPTED_EXTENSIONS = frozenset(['jpg', 'jpeg', 'png'])
SOURCE_FORMATS = frozenset(['jpeg', 'png'])

# EXIF orientations that swap width and height once applied.
TRANSPOSED_ORIENTATIONS = frozenset([5, 6, 7, 8])

MIN_QUALITY = 1
MAX_QUALITY = 100

NOT_NUMERICAL_MESSAGE = 'The size must be numerical value'
INVALID_FORMAT_MESSAGE = 'Invalid format'
FORMAT_MISMATCH_MESSAGE = 'The original file format must be jpeg or png.'

size_re = re.compile(r'[0-9]+')


class MyJsonFormatter(JsonFormatter):

  def __init__(self) -> None:
    super().__init__(json_ensure_ascii=False)

  def add_fields(self, log_record: Any, record: Any, message_dict: Any) -> None:
    log_record['_ts'] = datetime.datetime.now(datetime.UTC).strftime('%Y-%m-%dT%H:%M:%S.%fZ')

    if log_record.get('level'):
      log_record['level'] = log_record['level'].upper()
    else:
      log_record['level'] = record.levelname

    log_record['version'] = resizelambda.version

    super().add_fields(log_record, record, message_dict)


def init_logging() -> Logger:
  # https://stackoverflow.com/a/11548754/1160341
  logger = logging.getLogger()
  logger.setLevel(logging.DEBUG)
  for h in logger.handlers:
    logger.removeHandler(h)

  logging.getLogger('botocore').setLevel(logging.WARNING)
  logging.getLogger('urllib3').setLevel(logging.INFO)

  log = logging.getLogger(__name__)
  log_handler = logging.StreamHandler()
  log_handler.setFormatter(MyJsonFormatter())
  log_handler.setLevel(logging.DEBUG)
  log_handler.setStream(sys.stderr)
  log.addHandler(log_handler)
  log.propagate = False

  return log


logger = init_logging()


@dataclasses.dataclass(eq=True, frozen=True)
class Size:
  width: int
  height: int

  @classmethod
  def from_image(cls, image: Image) -> 'Size':
    return cls(image.get('width'), image.get('height'))

  def average(self) -> float:
    return (self.width + self.height) / 2


# Canonical output sizes. Order matters: the earlier entry wins a tie.
WHITELIST: tuple[Size, ...] = (
    Size(84, 84),
    Size(500, 500),
)


class OutputFormat(Enum):
  JPEG = 'jpeg'
  PNG = 'png'

  @classmethod
  def maybe_from_extension(cls, ext: str) -> Optional['OutputFormat']:
    if ext not in ACCEPTED_EXTENSIONS:
      return None
    if ext == 'png':
      return cls.PNG
    return cls.JPEG

  def content_type(self) -> str:
    return f'image/{self.value}'

  def suffix(self) -> str:
    if self == OutputFormat.JPEG:
      return '.jpg'
    if self == OutputFormat.PNG:
      return '.png'
    raise Exception('system error')

  def save_options(self, quality: int) -> dict[str, Any]:
    if self == OutputFormat.JPEG:
      return {'Q': quality}
    return {}


class FailureKind(Enum):
  VALIDATION = HTTPStatus.BAD_REQUEST
  NOT_FOUND = HTTPStatus.NOT_FOUND
  FORMAT_MISMATCH = HTTPStatus.FORBIDDEN


@dataclasses.dataclass(frozen=True)
class Failure:
  kind: FailureKind
  body: str
  reason: str

  @classmethod
  def bad_request(cls, body: str, reason: str) -> 'Failure':
    return cls(FailureKind.VALIDATION, body, reason)

  @classmethod
  def not_found(cls, path: HttpPath, reason: str) -> 'Failure':
    return cls(FailureKind.NOT_FOUND, f'{path} is not found.', reason)

  @classmethod
  def format_mismatch(cls, reason: str) -> 'Failure':
    return cls(FailureKind.FORMAT_MISMATCH, FORMAT_MISMATCH_MESSAGE, reason)

  @property
  def status(self) -> HTTPStatus:
    return self.kind.value


@dataclasses.dataclass(frozen=True)
class ParsedRequest:
  path: HttpPath
  bucket: str
  key: S3Key
  requested: Size
  output_format: OutputFormat


@dataclasses.dataclass(frozen=True)
class SourceMeta:
  format: str
  width: int
  height: int

  @classmethod
  def from_image(cls, image: Image) -> 'SourceMeta':
    """Read the format and the size as displayed, i.e. after EXIF rotation."""
    size = Size.from_image(image)
    width, height = size.width, size.height
    if (image.get_typeof('orientation') != 0 and
        image.get('orientation') in TRANSPOSED_ORIENTATIONS):
      width, height = height, width
    return cls(format_from_loader(image.get('vips-loader')), width, height)


@dataclasses.dataclass(frozen=True)
class ImageOptions:
  format: OutputFormat
  width: int
  height: int

  @classmethod
  def create(
      cls,
      output_format: OutputFormat,
      canonical: Size,
      source: SourceMeta,
  ) -> 'ImageOptions':
    """Shrink ``canonical`` so that neither axis exceeds the source image."""
    return cls(
        format=output_format,
        width=min(source.width, canonical.width),
        height=min(source.height, canonical.height))

  def to_size(self) -> Size:
    return Size(self.width, self.height)


@dataclasses.dataclass(frozen=True)
class InstantResponse:
  status: int
  b64_body: str
  content_type: str
  vips_us: int
  img_size: int


@dataclasses.dataclass(eq=True, frozen=True)
class XParams:
  region: str
  resp_max_age: Optional[int]
  error_max_age: Optional[int]
  quality: int


def format_from_loader(loader: str) -> str:
  # e.g. 'jpegload_buffer' -> 'jpeg'
  return loader.split('load', 1)[0]


def is_not_found_client_error(exception: ClientError) -> bool:
  if 'Error' not in exception.response:
    return False
  if 'Code' not in exception.response['Error']:
    return False
  return exception.response['Error']['Code'] in ['404', 'NoSuchKey']


def get_header(req: Request, name: str) -> str:
  return req['origin']['s3']['customHeaders'][name][0]['value']


def get_header_or(req: Request, name: str, default: str = '') -> str:
  custom_headers = req.get('origin', {}).get('s3', {}).get('customHeaders', {})
  return (get_header(req, name) if name in custom_headers else default)


def bucket_from_domain(domain: str) -> Optional[str]:
  label = domain.split('.', 1)[0]
  if not MIN_BUCKET_LEN < len(label) < MAX_BUCKET_LEN:
    return None
  return label


def parse_size(qs: dict[str, list[str]], name: str) -> Optional[int]:
  """Return the clamped size for ``name`` or None when it is not a usable number.

  An absent parameter means the largest size. A repeated parameter, a
  non-decimal value and zero are all rejected.
  """
  values = qs.get(name)
  if values is None:
    return MAX_SIZE

  if len(values) != 1 or size_re.fullmatch(values[0]) is None:
    return None

  value = int(values[0])
  if value <= 0:
    return None

  return min(value, MAX_SIZE)


def interpret(req: Request) -> ParsedRequest | Failure:
  path = req['uri']

  bucket = bucket_from_domain(req['origin']['s3']['domainName'])
  if bucket is None:
    return Failure.not_found(path, 'invalid bucket name')

  qs = parse.parse_qs(req['querystring'])
  width = parse_size(qs, 'width')
  height = parse_size(qs, 'height')
  if width is None or height is None:
    return Failure.bad_request(NOT_NUMERICAL_MESSAGE, 'invalid size')

  decoded = parse.unquote(path)
  segments = decoded.split('.')
  if len(segments) != 2:
    return Failure.not_found(path, 'malformed path')

  output_format = OutputFormat.maybe_from_extension(segments[1])
  if output_format is None:
    return Failure.bad_request(INVALID_FORMAT_MESSAGE, 'invalid extension')

  return ParsedRequest(
      path=path,
      bucket=bucket,
      key=S3Key(decoded[1:]),
      requested=Size(width, height),
      output_format=output_format)


def nearest_canonical_size(requested: Size, whitelist: Sequence[Size] = WHITELIST) -> Size:
  query_avg = requested.average()

  best = whitelist[0]
  best_score = abs(query_avg - best.average())
  for candidate in whitelist[1:]:
    score = abs(query_avg - candidate.average())
    if score < best_score:
      best = candidate
      best_score = score

  return best


class Resizer:
  clients: dict[str, S3Client] = {}

  def __init__(self, log: logging.Logger, s3: S3Client, params: XParams):
    self.log = log
    self.s3 = s3
    self.params = params
    self.log_context = {'path': '', 'qstr': ''}

  @classmethod
  def params_from_lambda(cls, log: Logger, req: Request) -> XParams:
    s3_origin = req.get('origin', {}).get('s3', {})
    region = get_header_or(req, 'x-env-region', s3_origin.get('region', DEFAULT_REGION))

    def int_or(
        name: str,
        default: Optional[int],
        lower: int,
        upper: Optional[int] = None,
    ) -> Optional[int]:
      value = get_header_or(req, name)
      if value == '':
        return default
      try:
        n = int(value)
      except ValueError:
        n = None
      if n is None or n < lower or (upper is not None and upper < n):
        log.warning({
            'message': 'invalid integer header',
            'key': name,
            'value': value,
        })
        return default
      return n

    quality = int_or('x-env-quality', DEFAULT_QUALITY, MIN_QUALITY, MAX_QUALITY)
    assert quality is not None

    return XParams(
        region=region,
        resp_max_age=int_or('x-env-resp-max-age', None, 0),
        error_max_age=int_or('x-env-error-max-age', None, 0),
        quality=quality)

  @classmethod
  def from_lambda(cls, log: Logger, req: Request) -> 'Resizer':
    params = cls.params_from_lambda(log, req)

    if params.region not in cls.clients:
      cls.clients[params.region] = boto3.client('s3', region_name=params.region)

    return cls(log=log, s3=cls.clients[params.region], params=params)

  def log_warning(self, message: str, dict: dict[str, Any]) -> None:
    self.log.warning({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_debug(self, message: str, dict: dict[str, Any]) -> None:
    self.log.debug({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_error(self, message: str, dict: dict[str, Any]) -> None:
    self.log.error({
        'message': message,
        **self.log_context,
        **dict,
    })

  def set_log_context(self, path: HttpPath, qstr: str) -> None:
    self.log_context = {'path': str(path), 'qstr': qstr}

  def fetch_original(self, parsed: ParsedRequest) -> bytes | Failure:
    try:
      res = self.s3.get_object(Bucket=parsed.bucket, Key=parsed.key)
      return res['Body'].read()
    except ClientError as e:
      if is_not_found_client_error(e):
        self.log_debug('original not found', {'bucket': parsed.bucket, 'key': parsed.key})
      else:
        self.log_warning(
            'failed to fetch original', {
                'reason': str(e),
                'bucket': parsed.bucket,
                'key': parsed.key,
            })
      return Failure.not_found(parsed.path, 'no orig')
    except BotoCoreError as e:
      self.log_warning(
          'failed to fetch original', {
              'reason': str(e),
              'bucket': parsed.bucket,
              'key': parsed.key,
          })
      return Failure.not_found(parsed.path, 'no orig')

  def read_source(self, original: bytes) -> SourceMeta | Failure:
    # Header only; pixels are decoded later by the shrink-on-load thumbnailer.
    meta = SourceMeta.from_image(Image.new_from_buffer(original, ''))

    # The extension has been checked already; the content may still disagree with it.
    if meta.format not in SOURCE_FORMATS:
      self.log_warning('format mismatch', {'format': meta.format})
      return Failure.format_mismatch(f'orig is {meta.format}')

    return meta

  def resize_image(self, original: bytes, meta: SourceMeta, options: ImageOptions) -> Image:
    # thumbnail_buffer applies the EXIF orientation before fitting the box.
    resized: Image = Image.thumbnail_buffer(
        original, options.width, height=options.height, size='down')

    self.log_debug(
        'resize param', {
            'original': Size(meta.width, meta.height),
            'target': options.to_size(),
            'resized': Size.from_image(resized),
        })

    return resized

  def transform(self, parsed: ParsedRequest) -> InstantResponse | Failure:
    canonical = nearest_canonical_size(parsed.requested)

    original = self.fetch_original(parsed)
    if isinstance(original, Failure):
      return original

    start_ns = time.time_ns()

    try:
      meta = self.read_source(original)
      if isinstance(meta, Failure):
        return meta

      options = ImageOptions.create(parsed.output_format, canonical, meta)
      resized: bytes = self.resize_image(original, meta, options).write_to_buffer(
          options.format.suffix(), **options.format.save_options(self.params.quality))
    except VipsError as e:
      self.log_warning('failed to decode original', {'reason': str(e), 'key': parsed.key})
      return Failure.not_found(parsed.path, 'broken orig')

    vips_us = (time.time_ns() - start_ns) // 1000

    return InstantResponse(
        status=HTTPStatus.OK,
        b64_body=base64.b64encode(resized).decode(),
        content_type=options.format.content_type(),
        vips_us=vips_us,
        img_size=len(resized))

  def run(self, req: Request) -> InstantResponse | Failure:
    match interpret(req):
      case Failure() as failure:
        return failure
      case ParsedRequest() as parsed:
        return self.transform(parsed)
      case _:
        raise Exception('system error')

  def cache_control_header(self, max_age: Optional[int]) -> list[ResponseHeader]:
    if max_age is None:
      return []
    return [{'key': 'Cache-Control', 'value': f'public, max-age={max_age}'}]

  def build_response(self, result: InstantResponse | Failure) -> ResponseResult:
    if isinstance(result, InstantResponse):
      self.log_debug(
          'responded', {
              'status': result.status,
              'content_type': result.content_type,
              'img_size': result.img_size,
              'vips_us': result.vips_us,
          })

      return {
          'status': str(result.status),
          'headers': [
              {
                  'key': 'Content-Type',
                  'value': result.content_type,
              },
              *self.cache_control_header(self.params.resp_max_age),
          ],
          'body': result.b64_body,
          'bodyEncoding': 'base64',
      }
    elif isinstance(result, Failure):
      self.log_debug('rejected', {'status': result.status, 'reason': result.reason})

      return {
          'status': str(result.status),
          'headers': [
              {
                  'key': 'Content-Type',
                  'value': 'text/plain',
              },
              *self.cache_control_header(self.params.error_max_age),
          ],
          'body': result.body,
          'bodyEncoding': 'text',
      }
    else:
      raise Exception('system error')

  def process(self, req: Request) -> ResponseResult:
    path = req.get('uri', HttpPath('/'))
    self.set_log_context(path, req.get('querystring', ''))

    try:
      result = self.run(req)
    except Exception as e:
      self.log_error('error during process()', {'reason': str(e)})
      result = Failure.not_found(path, 'error occurred')

    return self.build_response(result)


def lambda_main(event: OriginRequestEvent) -> ResponseResult:
  req = event['Records'][0]['cf']['request']
  resizer = Resizer.from_lambda(logger, req)
  return resizer.process(req)
