from typing import Literal, NewType, NotRequired, ReadOnly, TypedDict

HttpPath = NewType('HttpPath', str)
S3Key = NewType('S3Key', str)


class Header(TypedDict):
  key: NotRequired[ReadOnly[str]]
  value: str


class S3Origin(TypedDict):
  customHeaders: dict[str, list[Header]]
  domainName: str
  path: str
  readTimeout: NotRequired[int]
  responseCompletionTimeout: NotRequired[int]
  authMethod: Literal['origin-access-identity', 'none']
  region: NotRequired[str]


class Origin(TypedDict):
  s3: S3Origin


class Request(TypedDict):
  method: NotRequired[ReadOnly[Literal['GET', 'HEAD', 'OPTIONS', 'TRACE', 'PUT', 'DELETE', 'POST',
                                       'PATCH', 'CONNECT']]]
  uri: HttpPath
  querystring: str
  headers: dict[str, list[Header]]
  clientIp: NotRequired[ReadOnly[str]]
  origin: Origin


class OriginRequestConfig(TypedDict):
  distributionDomainName: ReadOnly[str]
  distributionId: ReadOnly[str]
  eventType: ReadOnly[Literal['origin-request']]
  requestId: ReadOnly[str]


class OriginRequestRecord(TypedDict):
  config: NotRequired[ReadOnly[OriginRequestConfig]]
  request: Request


class OriginRequestRecordContainer(TypedDict):
  cf: OriginRequestRecord


class OriginRequestEvent(TypedDict):
  Records: list[OriginRequestRecordContainer]


class ResponseHeader(TypedDict):
  key: str
  value: str


class ResponseResult(TypedDict):
  status: str
  headers: list[ResponseHeader]
  body: str
  bodyEncoding: NotRequired[Literal['text', 'base64']]
