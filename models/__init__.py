from .download_token import DownloadToken  # noqa: F401
from .share import ShareContent, ShareRecord  # noqa: F401
from .upload import UploadRecord, UploadSession  # noqa: F401
