import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "review_studio.settings")

application = get_wsgi_application()

# The transcode queue lives in the web process; start it and pick up
# anything a previous process left queued or half-processed.
from videos.queue import bootstrap_queue  # noqa: E402

bootstrap_queue()
