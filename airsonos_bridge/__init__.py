"""
AirSonos Bridge - 自己調整型AirPlay → Sonosブリッジ

AirPlay音声ソースをSonosスピーカーへ中継し、ホスト・ネットワーク状態に応じて
バッファ・ワーカー数・タイムアウトを自動調整するPythonパッケージ
"""

__version__ = "0.3.0"
__author__ = "AirSonos Bridge Project"
__description__ = "Self-tuning AirPlay to Sonos audio bridge runtime"
