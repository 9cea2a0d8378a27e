from aws_lambda_powertools.utilities.typing import LambdaContext

from resizelambda.originrequest import index as originrequest
from resizelambda.typing import OriginRequestEvent, ResponseResult


def origin_request_lambda_handler(
    event: OriginRequestEvent,
    _: LambdaContext,
) -> ResponseResult:
  return originrequest.lambda_main(event)
