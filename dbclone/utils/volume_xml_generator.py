# dbclone/utils/volume_xml_generator.py
import os
from xml.sax.saxutils import escape
from pathlib import Path

# 패키지 안의 templates 디렉터리에서 템플릿 파일을 찾습니다.
TEMPLATE_PATH = str(Path(__file__).resolve().parent / 'templates' / 'diff_volume.xml')

# base 디스크 확장자 -> qemu 포맷 이름
BASE_FORMATS = {
    '.qcow2': 'qcow2',
    '.vhdx': 'vhdx',
    '.vhd': 'vpc',
    '.vmdk': 'vmdk',
    '.img': 'raw',
    '.raw': 'raw',
}


def get_xml_template():
    """템플릿 파일을 읽어 XML 내용을 반환합니다."""
    try:
        with open(TEMPLATE_PATH, 'r') as f:
            return f.read()
    except FileNotFoundError:
        raise FileNotFoundError(f"Volume template file not found at {TEMPLATE_PATH}.")


# 템플릿 내용은 한 번만 읽어둡니다.
XML_TEMPLATE = get_xml_template()


def base_format_for(base_location):
    ext = os.path.splitext(base_location)[1].lower()
    return BASE_FORMATS.get(ext, 'raw')


def generate_volume_xml(diff_location, base_location, capacity_bytes):
    """
    base 디스크를 backing store로 쓰는 qcow2 differencing 볼륨 XML을 만듭니다.
    볼륨 이름은 diff_location의 파일 이름입니다.
    """
    return XML_TEMPLATE.format(
        volume_name=escape(os.path.basename(diff_location)),
        capacity_bytes=int(capacity_bytes),
        diff_location=escape(diff_location),
        base_location=escape(base_location),
        base_format=base_format_for(base_location),
    )
