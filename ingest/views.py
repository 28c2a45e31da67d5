import json
import time
from functools import wraps

from django.http import JsonResponse, StreamingHttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from ingest import operations
from ingest.errors import ForbiddenError, IngestError, ValidationError
from ingest.models import IngestionJob


def api_endpoint(view):
    """
    JSON API wrapper: session auth, and IngestError -> structured error payload.
    """

    @wraps(view)
    def wrapper(request, *args, **kwargs):
        if not request.user.is_authenticated:
            return JsonResponse({'error': 'Authentication required'}, status=401)
        try:
            return view(request, *args, **kwargs)
        except IngestError as e:
            return JsonResponse(e.as_dict(), status=e.status_code)

    return wrapper


def _json_body(request):
    if not request.body:
        return {}
    try:
        data = json.loads(request.body)
    except (ValueError, UnicodeDecodeError):
        raise ValidationError('Request body must be valid JSON')
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def _get(data, *names, default=None):
    """First present key among camelCase/snake_case spellings"""
    for name in names:
        if data.get(name) not in (None, ''):
            return data[name]
    return default


@csrf_exempt
@require_http_methods(['POST'])
@api_endpoint
def create_job_view(request):
    """
    Create an ingestion job.

    Body:
        sourceKind (required): upload|remoteUrl
        file_type (required): video|poster|avatar
        uploadKey / fileUrl: uploaded object (upload jobs)
        remoteUrl: source URL (remote jobs)
        contentId, episodeId (optional): catalog target
        filename, fileSize, contentType (optional): declared file details

    Returns:
        201 {jobId, status: "pending"}
    """
    data = _json_body(request)
    source_kind = _get(data, 'sourceKind', 'source_kind')
    file_type = _get(data, 'file_type', 'fileType')
    if not source_kind:
        raise ValidationError('Missing required field: sourceKind', field='sourceKind')
    if not file_type:
        raise ValidationError('Missing required field: file_type', field='file_type')

    job = operations.create_ingestion_job(
        request.user,
        source_kind,
        file_type,
        upload_key=_get(data, 'uploadKey', 'upload_key', default=''),
        file_url=_get(data, 'fileUrl', 'file_url', default=''),
        remote_url=_get(data, 'remoteUrl', 'remote_url', default=''),
        content_id=_get(data, 'contentId', 'content_id'),
        episode_id=_get(data, 'episodeId', 'episode_id'),
        filename=_get(data, 'filename', default=''),
        file_size=_get(data, 'fileSize', 'file_size'),
        content_type=_get(data, 'contentType', 'content_type', default=''),
    )
    return JsonResponse({'jobId': job.job_id, 'status': job.status}, status=201)


@csrf_exempt
@require_http_methods(['GET', 'DELETE'])
@api_endpoint
def job_detail_view(request, job_id):
    """GET: job status projection. DELETE: remove a pending or finished job."""
    if request.method == 'DELETE':
        operations.delete_job(job_id, request.user)
        return JsonResponse({'jobId': job_id, 'deleted': True})
    return JsonResponse(operations.get_job_view(job_id, request.user))


@csrf_exempt
@require_http_methods(['POST'])
@api_endpoint
def cancel_job_view(request, job_id):
    job = operations.cancel_job(job_id, request.user)
    return JsonResponse(operations.job_view(job))


@csrf_exempt
@require_http_methods(['POST'])
@api_endpoint
def request_upload_view(request):
    """
    Issue a presigned upload URL.

    Body:
        filename, fileSize, fileType, contentType (required)
        contentId, episodeId (optional)

    Returns:
        {uploadUrl, fileUrl, key, expiresIn, jobId}
    """
    data = _json_body(request)
    for name in ('filename', 'fileSize', 'fileType', 'contentType'):
        if data.get(name) in (None, ''):
            raise ValidationError(f'Missing required field: {name}', field=name)

    ticket, job = operations.request_upload(
        request.user,
        data['filename'],
        data['fileSize'],
        data['fileType'],
        data['contentType'],
        content_id=_get(data, 'contentId'),
        episode_id=_get(data, 'episodeId'),
    )
    return JsonResponse(
        {
            'uploadUrl': ticket.upload_url,
            'fileUrl': ticket.file_url,
            'key': ticket.key,
            'expiresIn': ticket.expires_in,
            'jobId': job.job_id,
        }
    )


@csrf_exempt
@require_http_methods(['POST'])
@api_endpoint
def complete_upload_view(request):
    """Mark an upload finished and queue its job. Body: {jobId, fileUrl}"""
    data = _json_body(request)
    job_id = _get(data, 'jobId')
    file_url = _get(data, 'fileUrl')
    if not job_id:
        raise ValidationError('Missing required field: jobId', field='jobId')
    if not file_url:
        raise ValidationError('Missing required field: fileUrl', field='fileUrl')

    job = operations.complete_upload(job_id, request.user, file_url)
    return JsonResponse({'jobId': job.job_id, 'fileUrl': job.upload_url, 'status': job.status})


@require_http_methods(['GET'])
@api_endpoint
def remote_info_view(request):
    """Look up a YouTube video before importing it (staff only)."""
    if not request.user.is_staff:
        raise ForbiddenError('Admin access required')
    url = request.GET.get('url')
    if not url:
        raise ValidationError('Missing required parameter: url', field='url')
    return JsonResponse(operations.fetch_remote_info(url))


@csrf_exempt
@require_http_methods(['POST'])
@api_endpoint
def remote_download_view(request):
    """
    Import a YouTube video as a new draft title (staff only).

    Body:
        url, title (required), type (movie|series), description

    Returns:
        201 {jobId, status, contentId}
    """
    data = _json_body(request)
    job = operations.create_remote_job(
        request.user,
        _get(data, 'url', default=''),
        _get(data, 'title', default=''),
        content_type=_get(data, 'type', default='movie'),
        description=_get(data, 'description', default=''),
    )
    return JsonResponse(
        {'jobId': job.job_id, 'status': job.status, 'contentId': job.content_id}, status=201
    )


@require_http_methods(['GET'])
@api_endpoint
def job_status_stream(request, job_id):
    """
    SSE endpoint that streams status updates for a job.

    Sends an event whenever status or progress changes, and a final
    'complete' event once the job is terminal.
    """
    operations.get_job_view(job_id, request.user)

    def event_stream():
        last_seen = None

        while True:
            try:
                job = IngestionJob.objects.get(job_id=job_id)
            except IngestionJob.DoesNotExist:
                yield 'event: error\ndata: {"error": "Job not found"}\n\n'
                break

            current = (job.status, job.progress)
            if current != last_seen:
                yield f'data: {json.dumps(operations.job_view(job))}\n\n'
                last_seen = current

                if job.is_terminal:
                    yield 'event: complete\ndata: {}\n\n'
                    break

            time.sleep(1)

    response = StreamingHttpResponse(event_stream(), content_type='text/event-stream')
    response['Cache-Control'] = 'no-cache'
    response['X-Accel-Buffering'] = 'no'
    return response
